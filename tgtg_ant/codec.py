"""Content-Encoding decoding for raw HTTP response bodies.

The API may stack several encodings (``Content-Encoding: gzip, deflate``).
They are listed in the order they were applied, so decoding walks the list
backwards, wrapping the byte stream in one decoder per layer.
"""

from __future__ import annotations

import gzip
import io
import logging
import re
import zlib
from contextlib import ExitStack
from typing import BinaryIO, Iterable, List, Optional, Union

from .errors import ResponseParseError, UnsupportedEncoding

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024
_SPLIT_RE = re.compile(r"[,\s]+")

SUPPORTED_ENCODINGS = ("gzip", "deflate", "identity")
_ALIASES = {"x-gzip": "gzip"}


def parse_content_encoding(header: Union[None, str, Iterable[str]]) -> List[str]:
    """Return the encoding tokens of one or more header values, in application order."""
    if header is None:
        return []
    values = [header] if isinstance(header, str) else list(header)
    tokens: List[str] = []
    for value in values:
        for token in _SPLIT_RE.split(value or ""):
            token = token.strip().lower()
            if token:
                tokens.append(_ALIASES.get(token, token))
    return tokens


def _deflate_wbits(head: bytes) -> int:
    # RFC 1950 header: CM=8 in the low nibble and the first two bytes divisible by 31.
    if len(head) >= 2 and head[0] & 0x0F == 8 and (head[0] << 8 | head[1]) % 31 == 0:
        return zlib.MAX_WBITS
    return -zlib.MAX_WBITS


class _DeflateReader(io.RawIOBase):
    """Streaming inflater accepting zlib-wrapped or raw deflate data."""

    def __init__(self, fileobj: BinaryIO) -> None:
        self._fileobj = fileobj
        self._inflater = None
        self._pending = b""
        self._eof = False

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        while not self._pending and not self._eof:
            chunk = self._fileobj.read(_CHUNK_SIZE)
            if self._inflater is None:
                self._inflater = zlib.decompressobj(_deflate_wbits(chunk))
            if chunk:
                self._pending = self._inflater.decompress(chunk)
            else:
                self._pending = self._inflater.flush()
                self._eof = True
        size = min(len(buffer), len(self._pending))
        buffer[:size] = self._pending[:size]
        self._pending = self._pending[size:]
        return size


def _wrap(token: str, stream: BinaryIO) -> Optional[BinaryIO]:
    if token == "gzip":
        return gzip.GzipFile(fileobj=stream, mode="rb")
    if token == "deflate":
        return io.BufferedReader(_DeflateReader(stream))
    if token == "identity":
        return None
    # compress, br and anything unknown
    raise UnsupportedEncoding(token)


def decode_body(content_encoding: Union[None, str, Iterable[str]], body: Union[bytes, BinaryIO]) -> bytes:
    """Undo every content-encoding applied to ``body`` and return the plain bytes.

    ``body`` is either the raw bytes or a binary file object positioned at the
    start of the payload. Every decoder opened along the way is closed before
    returning, including when a later layer fails.
    """
    tokens = parse_content_encoding(content_encoding)
    stream: BinaryIO = io.BytesIO(body) if isinstance(body, (bytes, bytearray)) else body

    with ExitStack() as stack:
        for token in reversed(tokens):
            wrapped = _wrap(token, stream)
            if wrapped is not None:
                stream = stack.enter_context(wrapped)
        try:
            return stream.read()
        except (OSError, EOFError, zlib.error) as e:
            logger.debug("Failed to decode body with encodings %s", tokens)
            raise ResponseParseError(f"corrupt {'/'.join(tokens) or 'identity'} body: {e}") from e


__all__ = ["decode_body", "parse_content_encoding", "SUPPORTED_ENCODINGS"]
