"""Tests for storegate/codec.py – base64 text encoding of byte streams."""

from __future__ import annotations

import asyncio
import base64

import pytest
from multiformats import multibase

from storegate.codec import decode_base64, encode_bytes, encode_stream, is_base64
from storegate.errors import ErrorKind, StoreGateError


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


class TestEncodeStream:
    def test_plain_matches_standard_base64(self) -> None:
        text = asyncio.run(encode_stream(_chunks(b"hello ", b"world")))
        assert text == base64.b64encode(b"hello world").decode()

    def test_self_describing_has_multibase_prefix(self) -> None:
        text = asyncio.run(encode_stream(_chunks(b"hello"), self_describing=True))
        assert text.startswith("m")
        assert multibase.decode(text) == b"hello"

    def test_empty_stream(self) -> None:
        assert asyncio.run(encode_stream(_chunks())) == ""

    def test_stream_error_propagates(self) -> None:
        """A failing stream yields no partial text."""

        async def broken():
            yield b"partial"
            raise StoreGateError(ErrorKind.BLOCK_NOT_FOUND, "not found: x")

        with pytest.raises(StoreGateError) as exc_info:
            asyncio.run(encode_stream(broken()))
        assert exc_info.value.kind is ErrorKind.BLOCK_NOT_FOUND


class TestDecode:
    def test_inverse_of_plain_mode(self) -> None:
        data = bytes(range(256))
        assert decode_base64(encode_bytes(data)) == data

    @pytest.mark.parametrize("text", ["", "not base64!", "abc", "YWJj$"])
    def test_malformed_input(self, text: str) -> None:
        with pytest.raises(StoreGateError) as exc_info:
            decode_base64(text)
        assert exc_info.value.kind is ErrorKind.INVALID_ENCODING

    def test_is_base64(self) -> None:
        assert is_base64("aGVsbG8=")
        assert not is_base64("%%%")
