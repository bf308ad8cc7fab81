from __future__ import annotations
from io import BytesIO

import qrcode
from qrcode.constants import ERROR_CORRECT_M
from PIL import Image

from .config import get_settings

settings = get_settings()

class RenderError(RuntimeError):
    pass

def render_barcode(text: str, width_px: int, height_px: int, *, margin: int | None = None) -> bytes:
    """Encode `text` as a QR code and return it as a PNG of exactly width_px x height_px."""
    if width_px <= 0 or height_px <= 0:
        raise RenderError(f"invalid size {width_px}x{height_px}")
    try:
        qr = qrcode.QRCode(
            version=None,
            error_correction=ERROR_CORRECT_M,
            box_size=1,
            border=settings.qr_margin if margin is None else margin,
        )
        qr.add_data(text)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white").get_image()
        # 1px per module, scaled without smoothing so module edges stay sharp
        img = img.convert("1").resize((width_px, height_px), Image.Resampling.NEAREST)
        b = BytesIO()
        img.save(b, format="PNG")
        return b.getvalue()
    except Exception as e:
        raise RenderError(f"could not render barcode: {e}") from e
