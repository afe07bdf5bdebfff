"""
Tests for the verification QR codec.
"""

import base64
import re

import pytest

from credvault.core.exceptions import InvalidQR
from credvault.services.qrcode_service import QRCodeService, is_valid_qr_code_url, parse_verification_url

DOC = "0x" + "ab" * 32
TX = "0x" + "cd" * 32
URL_PATTERN = re.compile(r"^https?://.*/verify\?hash=0x[a-f0-9]{64}&tx=0x[a-f0-9]{64}$")


@pytest.fixture
def qr():
    return QRCodeService("https://verify.credvault.test/verify")


class TestGenerate:
    """QR generation."""

    def test_verification_url_shape(self, qr):
        result = qr.generate(DOC, TX)
        assert URL_PATTERN.match(result.verification_url)
        assert "hash=" in result.verification_url and "tx=" in result.verification_url

    def test_data_url_is_png(self, qr):
        result = qr.generate(DOC, TX, include_svg=False)
        assert result.data_url.startswith("data:image/png;base64,")
        png = base64.b64decode(result.data_url.split(",", 1)[1])
        assert png[:8] == b"\x89PNG\r\n\x1a\n"
        assert result.svg is None

    def test_svg_rendered(self, qr):
        assert "<svg" in qr.generate(DOC, TX).svg

    def test_base_url_gets_verify_path(self):
        service = QRCodeService("https://verify.credvault.test/")
        assert service.verification_url(DOC, TX).startswith("https://verify.credvault.test/verify?")

    def test_rejects_bad_hashes(self, qr):
        with pytest.raises(InvalidQR):
            qr.generate("0x1234", TX)
        with pytest.raises(InvalidQR):
            qr.generate(DOC, "not-a-tx")


class TestParse:
    """Parsing scanned payloads."""

    def test_round_trip(self, qr):
        url = qr.generate(DOC, TX).verification_url
        assert parse_verification_url(url) == (DOC, TX)
        assert is_valid_qr_code_url(url)

    def test_round_trip_case_insensitive(self, qr):
        upper_doc, upper_tx = "0x" + "AB" * 32, "0x" + "CD" * 32
        url = qr.verification_url(upper_doc, upper_tx)
        parsed_doc, parsed_tx = parse_verification_url(url)
        # case is preserved, comparison is not case sensitive
        assert parsed_doc == upper_doc
        assert parsed_doc.lower() == DOC and parsed_tx.lower() == TX

    @pytest.mark.parametrize("url", [
        "",
        "not a url",
        f"ftp://verify.credvault.test/verify?hash={DOC}&tx={TX}",
        f"https:///verify?hash={DOC}&tx={TX}",
        f"https://verify.credvault.test/check?hash={DOC}&tx={TX}",
        f"https://verify.credvault.test/verify?hash={DOC}",
        f"https://verify.credvault.test/verify?hash={DOC}&tx={TX}&extra=1",
        f"https://verify.credvault.test/verify?hash={DOC}&hash={DOC}",
        f"https://verify.credvault.test/verify?hash=0x1234&tx={TX}",
        f"https://verify.credvault.test/verify?hash={DOC}&tx={TX}#frag",
    ])
    def test_malformed_rejected(self, url):
        with pytest.raises(InvalidQR):
            parse_verification_url(url)
        assert not is_valid_qr_code_url(url)
