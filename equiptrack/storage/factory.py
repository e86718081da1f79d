from ..config import settings
from .blob_provider import BlobStorageProvider
from .local_provider import LocalStorageProvider
from .provider import StorageProvider


def get_storage() -> StorageProvider:
    """
    Storage provider for uploads.
    Azure Blob when STORAGE_PROVIDER=blob, or when it is "auto" and blob
    credentials are present;
    the local filesystem otherwise.
    """
    blob_configured = bool(settings.azure_blob_connection and settings.azure_blob_container)
    if settings.storage_provider == "blob" or (settings.storage_provider != "local" and blob_configured):
        return BlobStorageProvider()
    return LocalStorageProvider()
