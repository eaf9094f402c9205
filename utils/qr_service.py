"""QR rendering for document verification links."""
from io import BytesIO

import qrcode
from flask import current_app
from qrcode.constants import ERROR_CORRECT_H

from utils.errors import DependencyError


def verification_url(transaction_code: str) -> str:
    base = (current_app.config.get("PUBLIC_BASE_URL") or "").rstrip("/")
    return f"{base}/api/verify/{transaction_code}"


def render_qr_png(data: str, box_size: int = 8, border: int = 2) -> bytes:
    try:
        qr = qrcode.QRCode(
            version=None,
            error_correction=ERROR_CORRECT_H,
            box_size=box_size,
            border=border,
        )
        qr.add_data(data)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")
        buffer = BytesIO()
        img.save(buffer, format="PNG")
    except Exception as exc:
        raise DependencyError("Failed to render QR code", dependency="qrcode") from exc
    return buffer.getvalue()


def document_qr_png(transaction_code: str) -> bytes:
    return render_qr_png(verification_url(transaction_code))
