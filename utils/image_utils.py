"""Validation for uploaded ID documents and announcement pictures."""
import io
import os
from typing import Tuple

from PIL import Image, ImageOps, UnidentifiedImageError
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from utils.errors import ValidationError

ALLOWED_IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "webp"}
ALLOWED_ID_EXTENSIONS = ALLOWED_IMAGE_EXTENSIONS | {"pdf"}
DEFAULT_MAX_ID_BYTES = 8 * 1024 * 1024  # 8 MB

PIL_FORMATS = {"JPEG": "jpg", "PNG": "png", "WEBP": "webp"}


def _fail_if(condition: bool, message: str) -> None:
    if condition:
        raise ValidationError(message, errors={"file": [message]})


def get_mime_type(ext: str) -> str:
    mapping = {
        "jpg": "image/jpeg",
        "jpeg": "image/jpeg",
        "png": "image/png",
        "webp": "image/webp",
        "pdf": "application/pdf",
    }
    return mapping.get(ext, "application/octet-stream")


def strip_image_metadata(content: bytes, fmt: str) -> bytes:
    """Re-encode an image without EXIF (camera GPS and device data stay off the server)."""
    with Image.open(io.BytesIO(content)) as img:
        cleaned = ImageOps.exif_transpose(img)
        if fmt == "JPEG" and cleaned.mode not in ("RGB", "L"):
            cleaned = cleaned.convert("RGB")
        out = io.BytesIO()
        cleaned.save(out, format=fmt)
        return out.getvalue()


def _read_upload(file: FileStorage, allowed: set, max_bytes: int) -> Tuple[bytes, str, str]:
    _fail_if(not file, "No file provided")
    filename = secure_filename(file.filename or "")
    _fail_if(not filename or "." not in filename, "Unsupported file name")
    ext = filename.rsplit(".", 1)[1].lower()
    _fail_if(ext not in allowed, "File type not allowed")

    file.stream.seek(0, os.SEEK_END)
    size = file.stream.tell()
    file.stream.seek(0)
    _fail_if(size == 0, "Empty file")
    _fail_if(size > max_bytes, "File exceeds size limits")

    content = file.read()
    _fail_if(len(content) > max_bytes, "File exceeds size limits")
    return content, ext, filename


def _clean_image(content: bytes) -> Tuple[bytes, str]:
    try:
        with Image.open(io.BytesIO(content)) as img:
            fmt = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ValidationError("Image validation failed", errors={"file": ["Invalid image data"]}) from exc
    _fail_if(fmt not in PIL_FORMATS, "Invalid image data")
    return strip_image_metadata(content, fmt), PIL_FORMATS[fmt]


def validate_id_document(file: FileStorage, max_bytes: int = DEFAULT_MAX_ID_BYTES) -> Tuple[bytes, str, str]:
    """Return ``(content, extension, filename)`` for an acceptable upload or raise ``ValidationError``."""
    content, ext, filename = _read_upload(file, ALLOWED_ID_EXTENSIONS, max_bytes)
    if ext == "pdf":
        _fail_if(not content.startswith(b"%PDF-"), "Invalid PDF data")
        return content, ext, filename
    content, ext = _clean_image(content)
    return content, ext, filename


def validate_image(file: FileStorage, max_bytes: int = DEFAULT_MAX_ID_BYTES) -> Tuple[bytes, str]:
    """Pictures attached to announcements; ``(content, extension)`` with metadata stripped."""
    content, _, _ = _read_upload(file, ALLOWED_IMAGE_EXTENSIONS, max_bytes)
    return _clean_image(content)
