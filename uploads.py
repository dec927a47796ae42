import logging
import os
import random
import time
from typing import Dict, List

from fastapi import UploadFile

import config
from errors import ValidationError

logger = logging.getLogger("artify.uploads")

ALLOWED_TYPES = {
    "image/jpeg",
    "image/png",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/zip",
    "application/x-zip-compressed",
}
IMAGE_TYPES = {"image/jpeg", "image/png"}

# subdir on disk -> public mount point
MOUNTS = {
    "products": "/uploads",
    "cart": "/uploads-cart",
}

CHUNK_SIZE = 1024 * 1024


def upload_path(subdir: str) -> str:
    path = os.path.join(config.UPLOAD_DIR, subdir)
    os.makedirs(path, exist_ok=True)
    return path


def save_upload(upload: UploadFile, subdir: str, field: str = "files", images_only: bool = False) -> Dict[str, str]:
    """Write an uploaded file under UPLOAD_DIR/<subdir> and describe where it is served from."""
    allowed = IMAGE_TYPES if images_only else ALLOWED_TYPES
    if upload.content_type not in allowed:
        raise ValidationError(
            "Invalid file type. Only JPEG, PNG, PDF, Word, and ZIP files are allowed."
            if not images_only else "Invalid file type. Only JPEG and PNG images are allowed.",
            reason="invalid_file_type",
        )
    original = upload.filename or "upload"
    ext = os.path.splitext(original)[1].lower()
    filename = f"{field}-{int(time.time() * 1000)}-{random.randint(0, 10**9)}{ext}"
    destination = os.path.join(upload_path(subdir), filename)

    written = 0
    with open(destination, "wb") as out:
        while True:
            chunk = upload.file.read(CHUNK_SIZE)
            if not chunk:
                break
            written += len(chunk)
            if written > config.MAX_UPLOAD_BYTES:
                out.close()
                os.remove(destination)
                raise ValidationError("File too large", reason="file_too_large")
            out.write(chunk)

    logger.info("Stored upload %s (%d bytes) as %s", original, written, destination)
    return {
        "name": original,
        "url": f"{MOUNTS[subdir]}/{filename}",
        "filename": filename,
        "format": ext.lstrip("."),
    }


def discard_uploads(saved: List[Dict[str, str]], subdir: str) -> None:
    """Remove files written by :func:`save_upload` that ended up unused."""
    for entry in saved:
        path = os.path.join(upload_path(subdir), entry["filename"])
        try:
            os.remove(path)
        except FileNotFoundError:
            continue
        logger.info("Discarded unused upload %s", path)
