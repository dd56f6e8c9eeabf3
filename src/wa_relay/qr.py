"""
Pairing code rendering (terminal and inline SVG).
"""

import base64
import io
import sys
from typing import Optional, TextIO

import qrcode
import qrcode.image.svg


def _build(code: str, box_size: int = 10) -> qrcode.QRCode:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=box_size,
        border=2,
    )
    qr.add_data(code)
    qr.make(fit=True)
    return qr


def svg_data_url(code: str) -> str:
    img = _build(code).make_image(image_factory=qrcode.image.svg.SvgPathImage)
    svg = img.to_string()
    if isinstance(svg, str):
        svg = svg.encode("utf-8")
    return "data:image/svg+xml;base64," + base64.b64encode(svg).decode("ascii")


def html_page(code: str) -> str:
    return f'<img src="{svg_data_url(code)}" alt="WhatsApp pairing QR code" />'


def print_terminal(code: str, out: Optional[TextIO] = None) -> None:
    qr = _build(code, box_size=1)
    buffer = io.StringIO()
    qr.print_ascii(out=buffer, invert=True)
    (out or sys.stdout).write(buffer.getvalue())
