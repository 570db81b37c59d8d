"""
storegate/retrieve.py
-----------------------------------------------------------------------------
Fetch stored content back from a public gateway.

Pipeline
--------
    path ──parse_ipfs_path──▶ Resource
         ──GET {gateway}/ipfs/{cid}{pathname}?format=car──▶ CAR body
         ──CarBlockStore.from_bytes──▶ block lookup
         ──unixfs.resolve──▶ Entry
         ──Entry.content──▶ lazy byte stream
         ──encode_stream──▶ base-64 text

The archive transport (``format=car``) is requested instead of raw bytes so
the response is self-verifying: every block is checked against its CID
before any byte is exported.
"""

from __future__ import annotations

import logging
import mimetypes
from collections.abc import AsyncIterator
from dataclasses import dataclass

import httpx

from storegate.car import CarBlockStore
from storegate.codec import encode_stream
from storegate.errors import ErrorKind, StoreGateError
from storegate.resource import Resource, parse_ipfs_path
from storegate.unixfs import resolve

logger = logging.getLogger(__name__)

_CLIENT_TIMEOUT = httpx.Timeout(connect=10.0, read=120.0, write=10.0, pool=10.0)

CAR_MIME_TYPE = "application/vnd.ipld.car"


@dataclass(frozen=True)
class RetrievedContent:
    """Lazy, single-pass content stream plus the gateway's content type."""

    stream: AsyncIterator[bytes]
    mime_type: str | None


@dataclass(frozen=True)
class RetrieveResult:
    data: str
    mime_type: str | None = None


def archive_url(resource: Resource, gateway_url: str | httpx.URL) -> httpx.URL:
    """
    Build ``{gateway}/ipfs/{cid}{pathname}`` with ``format=car`` added.

    A query already present in ``pathname`` is kept and ``format=car`` is
    appended to it.
    """
    target = f"/ipfs/{resource.path_with_cid}"
    target = target.partition("#")[0]
    separator = "&" if "?" in target else "?"
    return httpx.URL(str(gateway_url)).join(f"{target}{separator}format=car")


def _content_type(name: str, response: httpx.Response) -> str | None:
    # The gateway labels the archive, not the file inside it.
    guessed, _ = mimetypes.guess_type(name)
    if guessed:
        return guessed
    declared = response.headers.get("content-type")
    if declared and not declared.startswith(CAR_MIME_TYPE):
        return declared
    return None


async def retrieve_stream(
    resource: Resource,
    gateway_url: str | httpx.URL,
    *,
    client: httpx.AsyncClient | None = None,
) -> RetrievedContent:
    """
    Fetch ``resource`` as an archive and return a stream of its bytes.

    The archive is fully downloaded and decoded before this returns; the
    export itself runs lazily as the stream is consumed.

    Raises
    ------
    StoreGateError(GATEWAY_ERROR)   on a non-2xx gateway response.
    StoreGateError(NETWORK_ERROR)   on transport failure.
    StoreGateError(TIMEOUT_OR_ABORTED) if the gateway does not answer in time.
    StoreGateError(INVALID_ARCHIVE) if the body is not a valid archive.
    StoreGateError(BLOCK_NOT_FOUND / PATH_NOT_FOUND) while resolving the path.
    """
    url = archive_url(resource, gateway_url)
    logger.debug("Retrieving %s", url)

    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=_CLIENT_TIMEOUT, follow_redirects=True)
    try:
        response = await client.get(url)
    except httpx.TimeoutException as exc:
        raise StoreGateError(ErrorKind.TIMEOUT_OR_ABORTED, f"Gateway request timed out: {url}", cause=exc) from exc
    except httpx.TransportError as exc:
        raise StoreGateError(ErrorKind.NETWORK_ERROR, f"Error fetching file: {exc}", cause=exc) from exc
    finally:
        if owns_client:
            await client.aclose()

    if not response.is_success:
        raise StoreGateError(
            ErrorKind.GATEWAY_ERROR,
            f"Error fetching file: {response.status_code} {response.reason_phrase}",
        )

    blocks = CarBlockStore.from_bytes(response.content)
    if resource.cid not in blocks.roots:
        logger.warning(
            "Gateway archive for %s is rooted at %s instead",
            resource.cid,
            ", ".join(str(root) for root in blocks.roots) or "nothing",
        )
    entry = resolve(resource.path_with_cid, blocks)
    return RetrievedContent(stream=entry.content(), mime_type=_content_type(entry.name, response))


async def retrieve(
    filepath: str,
    gateway_url: str | httpx.URL,
    *,
    self_describing: bool = False,
    client: httpx.AsyncClient | None = None,
) -> RetrieveResult:
    """
    Retrieve ``filepath`` from the gateway as base-64 text.

    Parameters
    ----------
    filepath        : ``cid/name``, ``/ipfs/cid/name`` or ``ipfs://cid/name``.
    gateway_url     : Base URL of the gateway.
    self_describing : Return multibase base-64 (``m`` prefix) instead of plain.
    client          : Optional shared ``httpx.AsyncClient``.
    """
    resource = parse_ipfs_path(filepath)
    content = await retrieve_stream(resource, gateway_url, client=client)
    data = await encode_stream(content.stream, self_describing=self_describing)
    return RetrieveResult(data=data, mime_type=content.mime_type)
