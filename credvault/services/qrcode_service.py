# =====================================================
# FILE: credvault/services/qrcode_service.py
# Canonical verification URL, QR rendering (PNG/SVG) and parsing
# =====================================================

import base64
import io
import logging
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit

import qrcode
import qrcode.image.svg
from PIL import Image

from credvault.core.exceptions import InvalidQR
from credvault.services.crypto_service import is_valid_hash

logger = logging.getLogger(__name__)


@dataclass
class QRCodeResult:
    data_url: str
    svg: Optional[str]
    verification_url: str
    document_hash: str
    transaction_hash: str

    def to_dict(self) -> dict:
        return {
            "dataUrl": self.data_url,
            "svg": self.svg,
            "verificationUrl": self.verification_url,
        }


class QRCodeService:
    """Encodes `{base}?hash=H&tx=T` where base ends in /verify"""

    def __init__(self, base_url: str, size: int = 300, border: int = 1):
        base_url = base_url.rstrip("/")
        if not base_url.endswith("/verify"):
            base_url = f"{base_url}/verify"
        self.base_url = base_url
        self.size = size
        self.border = border

    def verification_url(self, document_hash: str, transaction_hash: str) -> str:
        if not is_valid_hash(document_hash) or not is_valid_hash(transaction_hash):
            raise InvalidQR("Document hash and transaction hash must be 0x-prefixed 64-hex strings")
        return f"{self.base_url}?{urlencode({'hash': document_hash, 'tx': transaction_hash})}"

    def _qr(self, data: str) -> qrcode.QRCode:
        qr = qrcode.QRCode(
            version=None,
            error_correction=qrcode.constants.ERROR_CORRECT_H,
            box_size=10,
            border=self.border,
        )
        qr.add_data(data)
        qr.make(fit=True)
        return qr

    def render_png(self, data: str) -> bytes:
        img = self._qr(data).make_image(fill_color="black", back_color="white").get_image()
        img = img.resize((self.size, self.size), Image.NEAREST)
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return buffer.getvalue()

    def render_svg(self, data: str) -> str:
        img = self._qr(data).make_image(image_factory=qrcode.image.svg.SvgPathImage)
        return img.to_string(encoding="unicode")

    def generate(self, document_hash: str, transaction_hash: str, include_svg: bool = True) -> QRCodeResult:
        url = self.verification_url(document_hash, transaction_hash)
        png = self.render_png(url)
        data_url = "data:image/png;base64," + base64.b64encode(png).decode("ascii")
        svg = self.render_svg(url) if include_svg else None

        logger.debug(f"QR code generated for {document_hash[:10]}...")
        return QRCodeResult(
            data_url=data_url,
            svg=svg,
            verification_url=url,
            document_hash=document_hash,
            transaction_hash=transaction_hash,
        )


def parse_verification_url(url: str) -> Tuple[str, str]:
    """
    Returns (hash, tx) exactly as they appear in the URL.

    Accepts only http(s)://host/.../verify?hash=<0x64hex>&tx=<0x64hex>
    with no other parameters and no repeats.
    """
    if not isinstance(url, str) or not url.strip():
        raise InvalidQR("Empty QR payload")

    try:
        parts = urlsplit(url.strip())
        params = parse_qsl(parts.query, keep_blank_values=True, strict_parsing=True)
    except ValueError as e:
        raise InvalidQR(f"Malformed verification URL: {str(e)}")

    if parts.scheme not in ("http", "https"):
        raise InvalidQR(f"Unsupported scheme: {parts.scheme!r}")
    if not parts.hostname:
        raise InvalidQR("Missing host")
    if not parts.path.rstrip("/").endswith("/verify"):
        raise InvalidQR("Path must end in /verify")
    if parts.fragment:
        raise InvalidQR("Fragments are not allowed")

    keys = [key for key, _ in params]
    if sorted(keys) != ["hash", "tx"]:
        raise InvalidQR("Expected exactly the parameters hash and tx")

    values = dict(params)
    document_hash, transaction_hash = values["hash"], values["tx"]
    if not is_valid_hash(document_hash):
        raise InvalidQR("hash parameter is not a 0x-prefixed 64-hex string")
    if not is_valid_hash(transaction_hash):
        raise InvalidQR("tx parameter is not a 0x-prefixed 64-hex string")
    return document_hash, transaction_hash


def is_valid_qr_code_url(url: str) -> bool:
    try:
        parse_verification_url(url)
        return True
    except InvalidQR:
        return False
