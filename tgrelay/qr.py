from __future__ import annotations

import base64
import io
from typing import Optional

import qrcode


QR_IMAGE_SIZE = 512
QR_BORDER = 1


def build_qr_png(payload: str, *, size: int = QR_IMAGE_SIZE) -> bytes:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=1,
        border=QR_BORDER,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    modules = qr.modules_count + 2 * QR_BORDER
    qr.box_size = max(1, size // modules)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def qr_png_base64(payload: Optional[str]) -> Optional[str]:
    if not payload:
        return None
    return base64.b64encode(build_qr_png(payload)).decode("ascii")


__all__ = ["build_qr_png", "qr_png_base64"]
