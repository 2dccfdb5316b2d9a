import logging
import mimetypes
import os
import uuid

from flask import current_app
from werkzeug.security import safe_join
from werkzeug.utils import secure_filename

logger = logging.getLogger(__name__)

UPLOAD_AREAS = ("assets", "bill_payments", "invoices", "repairs")


def upload_root():
    return current_app.config["UPLOAD_FOLDER"]


def save_upload(file_storage, area):
    """Store an uploaded file under ``<UPLOAD_FOLDER>/<area>/``.

    The stored name is random; only the sanitized extension of the original
    name is kept. Returns the path relative to the upload root, or ``None``
    when nothing was uploaded.
    """
    if area not in UPLOAD_AREAS:
        raise ValueError(f"Unknown upload area: {area}")
    if file_storage is None or not (file_storage.filename or "").strip():
        return None

    _, extension = os.path.splitext(secure_filename(file_storage.filename))
    directory = os.path.join(upload_root(), area)
    os.makedirs(directory, exist_ok=True)

    stored_name = f"{uuid.uuid4().hex}{extension.lower()}"
    target_path = os.path.join(directory, stored_name)
    file_storage.save(target_path)

    if os.path.getsize(target_path) == 0:
        os.remove(target_path)
        return None

    logger.info("Stored upload %s/%s", area, stored_name)
    return f"{area}/{stored_name}"


def resolve_upload(relative_path):
    """Absolute path of a stored file, or ``None`` if it is missing or escapes the upload root."""
    if not relative_path:
        return None
    full_path = safe_join(upload_root(), relative_path)
    if full_path is None or not os.path.isfile(full_path):
        return None
    return full_path


def delete_upload(relative_path):
    full_path = resolve_upload(relative_path)
    if full_path is None:
        return False
    os.remove(full_path)
    logger.info("Removed upload %s", relative_path)
    return True


def describe_upload(file_storage, relative_path):
    full_path = resolve_upload(relative_path)
    mime_type = file_storage.mimetype or mimetypes.guess_type(file_storage.filename)[0]
    return {
        "file_original_name": file_storage.filename,
        "file_path": relative_path,
        "file_mime_type": mime_type or "application/octet-stream",
        "file_size_bytes": os.path.getsize(full_path) if full_path else 0,
    }
