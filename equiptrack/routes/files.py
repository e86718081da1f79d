import hashlib
import os
import uuid
from mimetypes import guess_type
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse
from slugify import slugify
from sqlalchemy.orm import Session

from ..models.models import FileObject, User
from ..storage.factory import get_storage
from ..storage.local_provider import LocalStorageProvider
from ..storage.provider import StorageProvider


router = APIRouter(prefix="/files", tags=["files"])


def canonical_key(folder: str, original_name: Optional[str]) -> str:
    """`<folder>/<uuid>.<ext>`, keeping only a cleaned-up extension from the client's file name."""
    ext = os.path.splitext(original_name or "")[1].lstrip(".")
    ext = slugify(ext, separator="") if ext else ""
    name = str(uuid.uuid4())
    return f"{slugify(folder)}/{name}.{ext}" if ext else f"{slugify(folder)}/{name}"


def store_upload(
    db: Session,
    storage: StorageProvider,
    key: str,
    content: bytes,
    content_type: Optional[str],
    user: Optional[User],
) -> FileObject:
    """Write bytes to storage and record them; the caller commits."""
    storage.put(key, content, content_type=content_type)
    fo = FileObject(
        provider=storage.name,
        container=storage.container,
        key=key,
        size_bytes=len(content),
        checksum_sha256=hashlib.sha256(content).hexdigest(),
        content_type=content_type,
        public_url=storage.public_url(key),
        created_by=user.id if user is not None else None,
    )
    db.add(fo)
    db.flush()
    return fo


@router.get("/local/{file_path:path}")
def serve_local_file(file_path: str, storage: StorageProvider = Depends(get_storage)):
    """Serve files from local storage for development."""
    if not isinstance(storage, LocalStorageProvider):
        raise HTTPException(status_code=404, detail="File not found")
    try:
        path = storage.path_for(file_path)
    except ValueError:
        raise HTTPException(status_code=403, detail="Access denied")
    if not path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    content_type = guess_type(str(path))[0] or "application/octet-stream"
    return FileResponse(path=str(path), media_type=content_type)
