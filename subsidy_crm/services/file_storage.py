"""
Upload storage for task documents (PDF only)
"""
import logging
import re
import uuid
from pathlib import Path
from typing import Optional

from subsidy_crm.config import get_settings
from subsidy_crm.exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF"
PDF_CONTENT_TYPES = {"application/pdf", "application/x-pdf"}


def _sanitize_filename(filename: str) -> str:
    name = (filename or "document.pdf").replace(" ", "_")
    name = re.sub(r"[^\w.\-]", "", name)
    return name or "document.pdf"


def uploads_dir() -> Path:
    path = Path(get_settings().UPLOAD_DIR)
    path.mkdir(parents=True, exist_ok=True)
    return path


def validate_pdf(raw_bytes: bytes, content_type: Optional[str]) -> None:
    """Content type, size limit and %PDF magic bytes"""
    settings = get_settings()
    if content_type and content_type.lower() not in PDF_CONTENT_TYPES:
        raise ValidationError("Only PDF files are allowed")
    if not raw_bytes:
        raise ValidationError("File is required")
    if len(raw_bytes) > settings.MAX_UPLOAD_SIZE:
        raise ValidationError(f"File too large. Maximum size: {settings.MAX_UPLOAD_SIZE // (1024 * 1024)}MB")
    if not raw_bytes.startswith(PDF_MAGIC):
        raise ValidationError("Uploaded file is not a valid PDF")


def save_pdf(raw_bytes: bytes, filename: str, content_type: Optional[str] = None) -> str:
    """Validate and store a PDF, returning the stored reference (a bare file name)"""
    validate_pdf(raw_bytes, content_type)
    stored_name = f"{uuid.uuid4().hex}_{_sanitize_filename(filename)}"
    dest_path = uploads_dir() / stored_name
    dest_path.write_bytes(raw_bytes)
    logger.info(f"Stored upload {stored_name} ({len(raw_bytes)} bytes)")
    return stored_name


def resolve_upload(file_ref: str) -> Path:
    """Map a stored reference back to a file; only the basename is honoured"""
    name = Path(str(file_ref or "")).name
    if not name:
        raise NotFoundError("Attachment file not found on server")
    path = uploads_dir() / name
    if not path.is_file():
        raise NotFoundError("Attachment file not found on server")
    return path
