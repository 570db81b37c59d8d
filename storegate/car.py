"""
storegate/car.py
-----------------------------------------------------------------------------
Minimal reader for content-addressable archives (CARv1) as returned by a
gateway for ``?format=car`` requests.

Layout
------
    varint(len) | dag-cbor header {"version": 1, "roots": [CID, ...]}
    varint(len) | CID bytes | block bytes        (repeated to EOF)

The whole archive is decoded up front into an immutable ``CarBlockStore``
keyed by CID.  Lookups of absent CIDs raise BLOCK_NOT_FOUND so that an
exporter walking a truncated archive fails loudly instead of producing
partial output.
"""

from __future__ import annotations

import logging
import dag_cbor
from multiformats import CID, multihash, varint

from storegate.errors import ErrorKind, StoreGateError

logger = logging.getLogger(__name__)

# CIDv0 is a bare sha2-256 multihash: 0x12 0x20 + 32 digest bytes.
_CIDV0_PREFIX = b"\x12\x20"
_CIDV0_LENGTH = 34


def _invalid(message: str, cause: BaseException | None = None) -> StoreGateError:
    return StoreGateError(ErrorKind.INVALID_ARCHIVE, message, cause=cause)


def _read_varint(buf: memoryview, pos: int) -> tuple[int, int]:
    """Return (value, position after the varint)."""
    try:
        value, size, _ = varint.decode_raw(buf[pos:])
    except (ValueError, IndexError) as exc:
        raise _invalid(f"Malformed varint at offset {pos}", exc) from exc
    return value, pos + size


def _cid_length(buf: memoryview, pos: int) -> int:
    """Length in bytes of the binary CID starting at ``pos``."""
    if bytes(buf[pos : pos + 2]) == _CIDV0_PREFIX:
        return _CIDV0_LENGTH
    end = pos
    for _ in range(3):  # version, codec, multihash code
        _, end = _read_varint(buf, end)
    digest_size, end = _read_varint(buf, end)
    return end + digest_size - pos


def _verify(cid: CID, block: bytes) -> None:
    if cid.hashfun.name == "identity":
        return
    try:
        expected = multihash.digest(block, cid.hashfun.name)
    except (KeyError, ValueError) as exc:
        # Hash function not available locally; nothing to check against.
        logger.warning("Cannot verify block %s: %s", cid, exc)
        return
    if bytes(expected) != bytes(cid.digest):
        raise _invalid(f"Block hash does not match its CID: {cid}")


class CarBlockStore:
    """
    Read-only block lookup decoded from a CAR body.

    Use ``CarBlockStore.from_bytes``; the store is not modified after
    construction.  Blocks are keyed by the binary form of their CID so
    that lookups do not depend on the text base the CID was written in.
    """

    def __init__(self, roots: list[CID], blocks: dict[bytes, bytes]) -> None:
        self._roots = tuple(roots)
        self._blocks = blocks

    @property
    def roots(self) -> tuple[CID, ...]:
        return self._roots

    @classmethod
    def from_bytes(cls, data: bytes, *, verify: bool = True) -> CarBlockStore:
        """
        Decode a CARv1 archive.

        Parameters
        ----------
        data   : The complete archive body.
        verify : Recompute each block's multihash and reject mismatches.

        Raises
        ------
        StoreGateError(INVALID_ARCHIVE)
            On a malformed header, truncated section, undecodable CID or (with
            ``verify``) a block whose content does not match its CID.
        """
        buf = memoryview(data)
        if not buf:
            raise _invalid("Archive is empty")

        header_len, pos = _read_varint(buf, 0)
        if header_len == 0 or pos + header_len > len(buf):
            raise _invalid("Archive header is truncated")
        try:
            header = dag_cbor.decode(bytes(buf[pos : pos + header_len]))
        except Exception as exc:  # dag_cbor raises several unrelated error types
            raise _invalid("Archive header is not valid dag-cbor", exc) from exc
        pos += header_len

        if not isinstance(header, dict) or header.get("version") != 1:
            raise _invalid(f"Unsupported archive header: {header!r}")
        roots = header.get("roots")
        if not isinstance(roots, list) or not all(isinstance(r, CID) for r in roots):
            raise _invalid("Archive header has no valid roots list")

        blocks: dict[bytes, bytes] = {}
        while pos < len(buf):
            section_len, pos = _read_varint(buf, pos)
            end = pos + section_len
            if section_len == 0 or end > len(buf):
                raise _invalid(f"Archive section at offset {pos} is truncated")
            cid_len = _cid_length(buf, pos)
            if cid_len > section_len:
                raise _invalid(f"Archive section at offset {pos} is shorter than its CID")
            try:
                cid = CID.decode(bytes(buf[pos : pos + cid_len]))
            except (ValueError, KeyError) as exc:
                raise _invalid(f"Undecodable CID at offset {pos}", exc) from exc
            block = bytes(buf[pos + cid_len : end])
            if verify:
                _verify(cid, block)
            blocks[bytes(cid)] = block
            pos = end

        logger.debug("Decoded archive with %d blocks, roots=%s", len(blocks), [str(r) for r in roots])
        return cls(roots, blocks)

    def get_block(self, cid: CID) -> bytes:
        """
        Return the bytes of ``cid``.

        Identity-hash CIDs carry their content inline and need no block.

        Raises
        ------
        StoreGateError(BLOCK_NOT_FOUND) if the archive does not contain it.
        """
        block = self._blocks.get(bytes(cid))
        if block is not None:
            return block
        if cid.hashfun.name == "identity":
            return bytes(cid.raw_digest)
        raise StoreGateError(ErrorKind.BLOCK_NOT_FOUND, f"not found: {cid}")

    def __contains__(self, cid: object) -> bool:
        return isinstance(cid, CID) and bytes(cid) in self._blocks

    def __len__(self) -> int:
        return len(self._blocks)
