"""
QR rendering for authentication challenges and the ``qr`` command.
"""

import base64
import io

import qrcode
from qrcode.image.pil import PilImage


def render_png(text: str) -> bytes:
    """Encode ``text`` as a QR code and return PNG bytes."""
    image = qrcode.make(text, image_factory=PilImage)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def render_data_url(text: str) -> str:
    encoded = base64.b64encode(render_png(text)).decode("ascii")
    return f"data:image/png;base64,{encoded}"
