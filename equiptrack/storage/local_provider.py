"""
Local filesystem storage provider for development.
Saves uploads to a local directory instead of Azure Blob Storage.
"""
from pathlib import Path
from typing import BinaryIO, Optional, Union
from urllib.parse import quote

from ..config import settings
from .provider import StorageProvider


class LocalStorageProvider(StorageProvider):
    """Files live under `base_dir` and are served by GET /files/local/{key}."""

    name = "local"

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir or settings.local_storage_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    @property
    def container(self) -> str:
        return str(self.base_dir)

    def path_for(self, key: str) -> Path:
        """Filesystem path for `key`; raises ValueError when it would escape the storage root."""
        clean_key = key.lstrip("/").replace("\\", "/")
        root = self.base_dir.resolve()
        path = (root / clean_key).resolve()
        if path != root and root not in path.parents:
            raise ValueError(f"Key escapes storage root: {key}")
        return path

    def put(self, key: str, data: Union[bytes, BinaryIO], content_type: Optional[str] = None) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = data.read() if hasattr(data, "read") else data
        with open(path, "wb") as f:
            f.write(payload)

    def public_url(self, key: str) -> str:
        return f"{settings.public_base_url}/files/local/{quote(key.lstrip('/'))}"

    def exists(self, key: str) -> bool:
        try:
            return self.path_for(key).is_file()
        except ValueError:
            return False

    def delete(self, key: str) -> None:
        path = self.path_for(key)
        path.unlink(missing_ok=True)
