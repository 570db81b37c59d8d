"""
storegate/unixfs.py
-----------------------------------------------------------------------------
Pull-based export of UnixFS files from a decoded block store.

Stored files are DAGs of blocks: ``raw`` leaves holding bytes, and
``dag-pb`` nodes whose protobuf payload carries a UnixFS ``Data`` message
(type, inline bytes) plus ordered links to children.  Directories are
``dag-pb`` nodes whose links are named entries.

``resolve`` walks a ``<cid>/<segment>/...`` path from the root through
directory links by name.  ``Entry.content`` then streams the file's bytes by
walking its DAG depth first, fetching each block from the store only when
it is reached.  A block absent from the store fails the stream with
BLOCK_NOT_FOUND at that point; callers must drain the whole stream before
trusting the result.

Protobuf schemas (field numbers)
--------------------------------
PBNode   : Data = 1 (bytes), Links = 2 (repeated PBLink)
PBLink   : Hash = 1 (bytes), Name = 2 (string), Tsize = 3 (uint64)
UnixFS   : Type = 1 (enum), Data = 2 (bytes), filesize = 3 (uint64),
           blocksizes = 4 (repeated uint64), hashType = 5, fanout = 6
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Protocol

from multiformats import CID

from storegate.errors import ErrorKind, StoreGateError

logger = logging.getLogger(__name__)

DAG_PB = "dag-pb"
RAW = "raw"


class BlockGetter(Protocol):
    def get_block(self, cid: CID) -> bytes: ...


class UnixFSType(IntEnum):
    RAW = 0
    DIRECTORY = 1
    FILE = 2
    METADATA = 3
    SYMLINK = 4
    HAMT_SHARD = 5


# -----------------------------------------------------------------------------
# Protobuf decoding
# -----------------------------------------------------------------------------

_VARINT, _FIXED64, _LENGTH_DELIMITED, _FIXED32 = 0, 1, 2, 5


def _malformed(message: str) -> StoreGateError:
    return StoreGateError(ErrorKind.INVALID_ARCHIVE, message)


def _varint(buf: bytes, pos: int) -> tuple[int, int]:
    # Protobuf varints: up to 10 bytes, non-minimal encodings allowed.
    result = shift = 0
    while pos < len(buf) and shift < 70:
        byte = buf[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
    raise _malformed("Truncated protobuf varint")


def _fields(buf: bytes) -> Iterator[tuple[int, int | bytes]]:
    """Yield (field number, value) pairs; varints as int, length-delimited as bytes."""
    pos = 0
    while pos < len(buf):
        key, pos = _varint(buf, pos)
        number, wire = key >> 3, key & 0x07
        if wire == _VARINT:
            value, pos = _varint(buf, pos)
            yield number, value
        elif wire == _LENGTH_DELIMITED:
            size, pos = _varint(buf, pos)
            if pos + size > len(buf):
                raise _malformed("Truncated protobuf field")
            yield number, buf[pos : pos + size]
            pos += size
        elif wire == _FIXED64:
            pos += 8
        elif wire == _FIXED32:
            pos += 4
        else:
            raise _malformed(f"Unsupported protobuf wire type {wire}")
    if pos != len(buf):
        raise _malformed("Truncated protobuf message")


@dataclass(frozen=True)
class PBLink:
    cid: CID
    name: str | None = None


@dataclass(frozen=True)
class PBNode:
    data: bytes | None = None
    links: tuple[PBLink, ...] = ()


@dataclass(frozen=True)
class UnixFSData:
    type: UnixFSType
    data: bytes = b""
    filesize: int | None = None


def decode_pb_node(block: bytes) -> PBNode:
    data: bytes | None = None
    links: list[PBLink] = []
    for number, value in _fields(block):
        if number == 1 and isinstance(value, bytes):
            data = value
        elif number == 2 and isinstance(value, bytes):
            links.append(_decode_pb_link(value))
    return PBNode(data=data, links=tuple(links))


def _decode_pb_link(buf: bytes) -> PBLink:
    cid: CID | None = None
    name: str | None = None
    for number, value in _fields(buf):
        if number == 1 and isinstance(value, bytes):
            try:
                cid = CID.decode(value)
            except (ValueError, KeyError) as exc:
                raise StoreGateError(ErrorKind.INVALID_ARCHIVE, "Undecodable link CID", cause=exc) from exc
        elif number == 2 and isinstance(value, bytes):
            name = value.decode("utf-8", errors="replace")
    if cid is None:
        raise _malformed("dag-pb link without a Hash")
    return PBLink(cid=cid, name=name)


def decode_unixfs(buf: bytes | None) -> UnixFSData:
    if buf is None:
        raise _malformed("dag-pb node has no UnixFS data")
    kind: int | None = None
    data = b""
    filesize: int | None = None
    for number, value in _fields(buf):
        if number == 1 and isinstance(value, int):
            kind = value
        elif number == 2 and isinstance(value, bytes):
            data = value
        elif number == 3 and isinstance(value, int):
            filesize = value
    if kind is None:
        raise _malformed("UnixFS data without a Type")
    try:
        fs_type = UnixFSType(kind)
    except ValueError as exc:
        raise StoreGateError(ErrorKind.UNSUPPORTED_CONTENT, f"Unknown UnixFS type {kind}", cause=exc) from exc
    return UnixFSData(type=fs_type, data=data, filesize=filesize)


# -----------------------------------------------------------------------------
# Export
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Entry:
    """A resolved path: the node it names plus enough context to stream it."""

    name: str
    path: str
    cid: CID
    kind: str  # "file", "raw", "directory" or "symlink"
    blocks: BlockGetter = field(repr=False, compare=False)

    @property
    def is_directory(self) -> bool:
        return self.kind == "directory"

    async def content(self) -> AsyncIterator[bytes]:
        """
        Stream the entry's bytes in order.  Single pass; call again for a new pass.

        Raises
        ------
        StoreGateError(NOT_A_FILE)      if the entry is a directory.
        StoreGateError(BLOCK_NOT_FOUND) if a block is missing mid-walk.
        StoreGateError(INVALID_ARCHIVE) if the byte count disagrees with the
                                        file size recorded in the root node.
        """
        if self.is_directory:
            raise StoreGateError(ErrorKind.NOT_A_FILE, f"{self.path} is a directory, not a file")
        expected = _recorded_size(self.cid, self.blocks)
        received = 0
        async for chunk in _file_chunks(self.cid, self.blocks):
            received += len(chunk)
            yield chunk
        if expected is not None and received != expected:
            raise StoreGateError(
                ErrorKind.INVALID_ARCHIVE,
                f"{self.path}: exported {received} bytes but the file records {expected}",
            )


def _recorded_size(cid: CID, blocks: BlockGetter) -> int | None:
    # Raw leaves and symlinks carry no filesize.
    if cid.codec.name != DAG_PB:
        return None
    unixfs = decode_unixfs(decode_pb_node(blocks.get_block(cid)).data)
    if unixfs.type is not UnixFSType.FILE:
        return None
    return unixfs.filesize


async def _file_chunks(cid: CID, blocks: BlockGetter) -> AsyncIterator[bytes]:
    block = blocks.get_block(cid)
    codec = cid.codec.name
    if codec == RAW:
        if block:
            yield block
        return
    if codec != DAG_PB:
        raise StoreGateError(ErrorKind.UNSUPPORTED_CONTENT, f"Cannot export {codec} block {cid}")

    node = decode_pb_node(block)
    unixfs = decode_unixfs(node.data)
    if unixfs.type not in (UnixFSType.FILE, UnixFSType.RAW, UnixFSType.SYMLINK):
        raise StoreGateError(ErrorKind.NOT_A_FILE, f"Block {cid} is a {unixfs.type.name.lower()}, not file data")
    if unixfs.data:
        yield unixfs.data
    for link in node.links:
        async for chunk in _file_chunks(link.cid, blocks):
            yield chunk


def _classify(cid: CID, blocks: BlockGetter) -> tuple[str, PBNode | None]:
    block = blocks.get_block(cid)
    codec = cid.codec.name
    if codec == RAW:
        return "raw", None
    if codec != DAG_PB:
        raise StoreGateError(ErrorKind.UNSUPPORTED_CONTENT, f"Unsupported codec {codec} for {cid}")
    node = decode_pb_node(block)
    fs_type = decode_unixfs(node.data).type
    if fs_type == UnixFSType.HAMT_SHARD:
        raise StoreGateError(ErrorKind.UNSUPPORTED_CONTENT, f"Sharded directory {cid} is not supported")
    if fs_type == UnixFSType.DIRECTORY:
        return "directory", node
    if fs_type == UnixFSType.SYMLINK:
        return "symlink", node
    return "file", node


def resolve(path: str, blocks: BlockGetter) -> Entry:
    """
    Resolve ``<cid>[/segment...]`` to an ``Entry``.

    Any query string or fragment on ``path`` is ignored.  Segments are matched
    against directory link names exactly (no decoding or case folding).

    Raises
    ------
    StoreGateError(INVALID_PATH)        if the leading CID cannot be decoded.
    StoreGateError(BLOCK_NOT_FOUND)     if a block on the path is missing.
    StoreGateError(PATH_NOT_FOUND)      if a segment names no directory entry.
    StoreGateError(NOT_A_FILE)          if a non-final segment is not a directory.
    StoreGateError(UNSUPPORTED_CONTENT) for sharded directories or foreign codecs.
    """
    bare = path.split("?", 1)[0].split("#", 1)[0]
    parts = [part for part in bare.split("/") if part]
    if not parts:
        raise StoreGateError(ErrorKind.INVALID_PATH, f"Missing content identifier in {path!r}")
    root, *segments = parts
    try:
        cid = CID.decode(root)
    except (ValueError, KeyError) as exc:
        raise StoreGateError(ErrorKind.INVALID_PATH, f"Invalid content identifier {root!r}", cause=exc) from exc

    name = root
    walked = root
    kind, node = _classify(cid, blocks)
    for segment in segments:
        if kind != "directory" or node is None:
            raise StoreGateError(ErrorKind.NOT_A_FILE, f"{walked} is not a directory")
        link = next((link for link in node.links if link.name == segment), None)
        if link is None:
            raise StoreGateError(ErrorKind.PATH_NOT_FOUND, f"file does not exist: {walked}/{segment}")
        cid, name = link.cid, segment
        walked = f"{walked}/{segment}"
        kind, node = _classify(cid, blocks)

    logger.debug("Resolved %s to %s (%s)", path, cid, kind)
    return Entry(name=name, path=walked, cid=cid, kind=kind, blocks=blocks)
