# patlog/qr_code.py
import io
import logging

import qrcode
from PIL import Image
from qrcode.constants import ERROR_CORRECT_M

from patlog import config


class QrCodeError(RuntimeError):
    """The QR encoder failed; the certificate cannot be produced."""


def certificate_url(inspection_id: str, base_url: str = None) -> str:
    """Public verification link for an inspection."""
    base = (base_url or config.BASE_URL).rstrip('/')
    return f"{base}/c/{inspection_id}"

def generate_qr_png(inspection_id: str, base_url: str = None, size: int = 360) -> bytes:
    """
    Encodes the verification URL as a square PNG of size x size pixels.
    Every module is a whole number of pixels; any remainder is white margin.
    """
    url = certificate_url(inspection_id, base_url)
    try:
        qr = qrcode.QRCode(
            version=None,
            error_correction=ERROR_CORRECT_M,
            border=2
        )
        qr.add_data(url)
        qr.make(fit=True)
        qr.box_size = max(1, size // (qr.modules_count + 2 * qr.border))
        code = qr.make_image(fill_color="black", back_color="white").get_image().convert("L")

        img = Image.new("L", (max(size, code.width), max(size, code.height)), 255)
        img.paste(code, ((img.width - code.width) // 2, (img.height - code.height) // 2))

        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return buffer.getvalue()
    except Exception as e:
        logging.error(f"QR code generation failed for {url}: {e}", exc_info=True)
        raise QrCodeError("QR code generation failed") from e
