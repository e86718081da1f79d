from datetime import datetime, timedelta, timezone
from typing import BinaryIO, Optional, Union

from azure.core.exceptions import ResourceNotFoundError
from azure.storage.blob import (
    BlobServiceClient,
    BlobSasPermissions,
    ContentSettings,
    generate_blob_sas,
)

from ..config import settings
from .provider import StorageProvider


# transfer photos stay linked from their transfer rows, so read links are long-lived
PUBLIC_URL_TTL_S = 60 * 60 * 24 * 365


class BlobStorageProvider(StorageProvider):
    name = "blob"

    def __init__(self) -> None:
        if not settings.azure_blob_connection or not settings.azure_blob_container:
            raise RuntimeError("AZURE_BLOB_CONNECTION and AZURE_BLOB_CONTAINER must be set")
        self._service = BlobServiceClient.from_connection_string(settings.azure_blob_connection)
        self._container = settings.azure_blob_container

    @property
    def container(self) -> str:
        return self._container

    def _client(self, key: str):
        return self._service.get_blob_client(self._container, key.lstrip("/"))

    def put(self, key: str, data: Union[bytes, BinaryIO], content_type: Optional[str] = None) -> None:
        content_settings = ContentSettings(content_type=content_type) if content_type else None
        self._client(key).upload_blob(data, overwrite=True, content_settings=content_settings)

    def public_url(self, key: str) -> str:
        blob_url = self._client(key).url
        account_key = getattr(self._service.credential, "account_key", None)
        if not account_key:
            # container is expected to allow anonymous blob reads
            return blob_url
        sas = generate_blob_sas(
            account_name=self._service.account_name,
            container_name=self._container,
            blob_name=key.lstrip("/"),
            account_key=account_key,
            permission=BlobSasPermissions(read=True),
            expiry=datetime.now(timezone.utc) + timedelta(seconds=PUBLIC_URL_TTL_S),
        )
        return f"{blob_url}?{sas}"

    def exists(self, key: str) -> bool:
        return self._client(key).exists()

    def delete(self, key: str) -> None:
        try:
            self._client(key).delete_blob()
        except ResourceNotFoundError:
            pass
