"""
storegate/codec.py
-----------------------------------------------------------------------------
Base-64 conversion between byte streams and text.

Two output modes:

- plain           : standard padded base-64 (RFC 4648 §4).
- self-describing : multibase base-64, i.e. the unpadded alphabet prefixed
                    with ``m`` so a reader can tell the encoding without any
                    external context.

Only the plain mode is decoded here; inline upload content always arrives
as plain base-64.
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import AsyncIterable

from multiformats import multibase

from storegate.errors import ErrorKind, StoreGateError


def encode_bytes(data: bytes, *, self_describing: bool = False) -> str:
    if self_describing:
        return multibase.encode(data, "base64")
    return base64.b64encode(data).decode("ascii")


async def encode_stream(stream: AsyncIterable[bytes], *, self_describing: bool = False) -> str:
    """
    Drain ``stream`` and return its content as base-64 text.

    The stream is consumed exactly once; it must be finite.  Any error raised
    by the stream (e.g. a missing block during export) propagates unchanged
    and no partial text is returned.
    """
    chunks: list[bytes] = []
    async for chunk in stream:
        chunks.append(chunk)
    return encode_bytes(b"".join(chunks), self_describing=self_describing)


def decode_base64(text: str) -> bytes:
    """
    Decode plain base-64 text into bytes.

    Raises
    ------
    StoreGateError(INVALID_ENCODING)
        If ``text`` is empty or contains characters outside the standard
        alphabet, or has invalid padding.
    """
    if not text:
        raise StoreGateError(ErrorKind.INVALID_ENCODING, "Base64 content must not be empty")
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise StoreGateError(ErrorKind.INVALID_ENCODING, "Invalid base64 format", cause=exc) from exc


def is_base64(text: str) -> bool:
    try:
        decode_base64(text)
    except StoreGateError:
        return False
    return True
