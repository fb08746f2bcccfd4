# uploads.py
"""Local-disk storage for uploaded identity images, served under /uploads."""

import os
import uuid
import logging

from werkzeug.utils import secure_filename

log = logging.getLogger(__name__)

UPLOADS_URL_PREFIX = "/uploads"
ALLOWED_CONTENT_TYPE_PREFIX = "image/"


def safe_filename(filename: str) -> str:
    """Random, collision-resistant name that keeps a sanitized original suffix."""
    return f"{uuid.uuid4()}-{secure_filename(filename or '') or 'upload'}"


def ensure_upload_dir(upload_dir: str) -> str:
    os.makedirs(upload_dir, exist_ok=True)
    return upload_dir


def save_uploaded_file(upload_dir: str, data: bytes, filename: str) -> str:
    """Writes the bytes under upload_dir and returns the public URL path."""
    ensure_upload_dir(upload_dir)
    stored_name = safe_filename(filename)
    full_path = os.path.join(upload_dir, stored_name)
    with open(full_path, "wb") as fh:
        fh.write(data)
    log.info(f"Stored upload {stored_name} ({len(data)} bytes)")
    return f"{UPLOADS_URL_PREFIX}/{stored_name}"
