import gzip
import io
import json
import zlib

import pytest

from tgtg_ant import codec
from tgtg_ant.codec import decode_body, parse_content_encoding
from tgtg_ant.errors import ResponseParseError, UnsupportedEncoding

PAYLOAD = json.dumps({"items": [{"item": {"item_id": "1"}}]}).encode()
# built before any test replaces gzip.GzipFile
GZIP_THEN_DEFLATE = zlib.compress(gzip.compress(PAYLOAD))


def raw_deflate(data: bytes) -> bytes:
    compressor = zlib.compressobj(wbits=-zlib.MAX_WBITS)
    return compressor.compress(data) + compressor.flush()


class TestParseContentEncoding:
    """Splitting and normalising Content-Encoding values."""

    def test_missing_header_is_identity(self):
        assert parse_content_encoding(None) == []
        assert parse_content_encoding("") == []

    def test_commas_and_spaces_are_separators(self):
        assert parse_content_encoding("gzip,  deflate , identity") == ["gzip", "deflate", "identity"]

    def test_tokens_are_lowercased_and_aliases_resolved(self):
        assert parse_content_encoding("GZip, x-gzip") == ["gzip", "gzip"]

    def test_several_header_values_are_concatenated(self):
        assert parse_content_encoding(["gzip", "deflate"]) == ["gzip", "deflate"]


class TestDecodeBody:
    """Undoing content-encodings in reverse order of application."""

    def test_no_encoding_returns_body_unchanged(self):
        assert decode_body(None, PAYLOAD) == PAYLOAD

    def test_identity_tokens_are_ignored(self):
        body = gzip.compress(PAYLOAD)
        assert decode_body("identity, identity, gzip, identity", body) == PAYLOAD

    def test_zlib_wrapped_deflate(self):
        assert decode_body("deflate", zlib.compress(PAYLOAD)) == PAYLOAD

    def test_raw_deflate(self):
        assert decode_body("deflate", raw_deflate(PAYLOAD)) == PAYLOAD

    def test_layers_are_undone_last_applied_first(self):
        # gzip applied first, then deflate
        body = zlib.compress(gzip.compress(PAYLOAD))
        assert decode_body("gzip, deflate", body) == PAYLOAD

        # deflate applied first, then gzip
        body = gzip.compress(raw_deflate(PAYLOAD))
        assert decode_body("deflate, gzip", body) == PAYLOAD

    def test_accepts_a_stream(self):
        assert decode_body("gzip", io.BytesIO(gzip.compress(PAYLOAD))) == PAYLOAD

    def test_empty_body(self):
        assert decode_body(None, b"") == b""

    @pytest.mark.parametrize("header", ["br", "compress", "zstd", "gzip, br", "br, gzip", "identity, foo"])
    def test_unsupported_token_fails(self, header):
        with pytest.raises(UnsupportedEncoding):
            decode_body(header, gzip.compress(PAYLOAD))

    def test_unsupported_token_is_reported(self):
        with pytest.raises(UnsupportedEncoding) as excinfo:
            decode_body("gzip, compress", b"")
        assert excinfo.value.token == "compress"

    def test_corrupt_gzip_body(self):
        with pytest.raises(ResponseParseError):
            decode_body("gzip", b"definitely not gzip")

    def test_truncated_gzip_body(self):
        with pytest.raises(ResponseParseError):
            decode_body("gzip", gzip.compress(PAYLOAD)[:-10])


class TestDecoderRelease:
    """Every decoder opened along the way is closed, whatever the outcome."""

    @pytest.fixture
    def opened(self, monkeypatch):
        opened = []

        class RecordingGzipFile(gzip.GzipFile):
            def __init__(self, *args, **kwargs):
                super().__init__(*args, **kwargs)
                opened.append(self)

        class RecordingDeflateReader(codec._DeflateReader):
            def __init__(self, *args, **kwargs):
                super().__init__(*args, **kwargs)
                opened.append(self)

        monkeypatch.setattr(codec.gzip, "GzipFile", RecordingGzipFile)
        monkeypatch.setattr(codec, "_DeflateReader", RecordingDeflateReader)
        return opened

    def test_closed_after_success(self, opened):
        assert decode_body("gzip, deflate", GZIP_THEN_DEFLATE) == PAYLOAD
        assert len(opened) == 2
        assert all(decoder.closed for decoder in opened)

    def test_closed_when_a_later_token_is_unsupported(self, opened):
        with pytest.raises(UnsupportedEncoding):
            decode_body("compress, gzip, deflate", GZIP_THEN_DEFLATE)
        assert len(opened) == 2
        assert all(decoder.closed for decoder in opened)

    def test_closed_when_an_inner_layer_is_corrupt(self, opened):
        body = zlib.compress(b"this was never gzipped")

        with pytest.raises(ResponseParseError):
            decode_body("gzip, deflate", body)
        assert len(opened) == 2
        assert all(decoder.closed for decoder in opened)
