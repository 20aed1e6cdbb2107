from io import BytesIO

import qrcode
from qrcode.constants import ERROR_CORRECT_M


def visit_lookup_url(base_url: str, external_ref: str) -> str:
    """The address a patient's phone opens after scanning the visit QR."""
    return f"{base_url.rstrip('/')}/visits/lookup/{external_ref}"


def visit_qr_png(base_url: str, external_ref: str, box_size: int = 8) -> bytes:
    """PNG slip code for a visit; scanning it opens the visit's lookup page."""
    code = qrcode.QRCode(error_correction=ERROR_CORRECT_M, box_size=box_size, border=4)
    code.add_data(visit_lookup_url(base_url, external_ref))
    code.make(fit=True)

    buffer = BytesIO()
    code.make_image().save(buffer, format="PNG")
    return buffer.getvalue()
