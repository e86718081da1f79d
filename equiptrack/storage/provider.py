from typing import BinaryIO, Optional, Union


class StorageProvider:
    name = "abstract"

    @property
    def container(self) -> str:
        raise NotImplementedError

    def put(self, key: str, data: Union[bytes, BinaryIO], content_type: Optional[str] = None) -> None:
        raise NotImplementedError

    def public_url(self, key: str) -> str:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError
