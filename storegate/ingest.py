"""
storegate/ingest.py
-----------------------------------------------------------------------------
Policy-enforced download of remote files into bounded in-memory blobs.

Pipeline for ``fetch_url``
--------------------------
1. Parse the URL                      → INVALID_URL
2. Scheme allow-list                  → SCHEME_NOT_ALLOWED
3. Domain allow-list (unless open)    → DOMAIN_NOT_ALLOWED
4. Enter the abort scope (timer OR caller token)
5. HEAD for the declared length       → METADATA_REQUEST_FAILED /
                                        SIZE_EXCEEDED_PREDECLARED
6. Streamed GET with a running total  → BODY_REQUEST_FAILED /
                                        EMPTY_BODY (204, 205: no body) /
                                        SIZE_EXCEEDED_STREAMING
7. Concatenate; zero bytes is a valid empty file
8. MIME: override > content-type > application/octet-stream
9. Return FileBlob

The declared content-length is advisory.  Servers can omit or under-report
it, so the streaming bound in step 6 is the only guarantee: no more than
``max_bytes`` plus one in-flight chunk is ever held in memory.

Redirects are followed by hand so every hop is checked against the scheme
and domain allow-lists before a request is sent to it.

Cancellation
------------
A caller may pass an ``asyncio.Event`` as a cancellation token.  It is merged
with the policy timer in ``abort_scope``: whichever fires first cancels the
in-flight request and the call fails with TIMEOUT_OR_ABORTED.  The timer and
the watcher task are torn down on every exit path.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import httpx

from storegate.codec import decode_base64
from storegate.errors import ErrorKind, StoreGateError

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"

# Hard cap on redirect hops; each one is policy-checked.
MAX_REDIRECTS = 5

# Per-operation transport limits for clients created here.  The overall
# deadline is the policy timer, not these.
_CLIENT_TIMEOUT = httpx.Timeout(connect=10.0, read=60.0, write=10.0, pool=10.0)

# Statuses whose responses carry no body at all, as opposed to an empty one.
_NULL_BODY_STATUSES = frozenset({204, 205})


# -----------------------------------------------------------------------------
# Types
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class UrlUploadPolicy:
    """
    Limits applied to every URL ingestion.

    ``allowed_domains`` is only consulted when ``allow_all_domains`` is False;
    an empty set then rejects every request.  ``fetch_timeout_ms == 0``
    disables the timer (the caller's token still applies).
    """

    max_bytes: int
    allowed_schemes: frozenset[str]
    allow_all_domains: bool = False
    allowed_domains: frozenset[str] = field(default_factory=frozenset)
    fetch_timeout_ms: int = 0

    def __post_init__(self) -> None:
        if self.max_bytes < 0:
            raise StoreGateError(ErrorKind.INVALID_POLICY, "max_bytes must be >= 0")
        if self.fetch_timeout_ms < 0:
            raise StoreGateError(ErrorKind.INVALID_POLICY, "fetch_timeout_ms must be >= 0")
        if not self.allowed_schemes:
            raise StoreGateError(ErrorKind.INVALID_POLICY, "At least one URL scheme must be allowed")
        # Accept any iterable at construction but store frozensets.
        object.__setattr__(self, "allowed_schemes", frozenset(s.lower() for s in self.allowed_schemes))
        object.__setattr__(self, "allowed_domains", frozenset(self.allowed_domains))

    @classmethod
    def build(
        cls,
        *,
        max_bytes: int,
        allowed_schemes: Iterable[str],
        allow_all_domains: bool = False,
        allowed_domains: Iterable[str] | None = None,
        fetch_timeout_ms: int = 0,
    ) -> UrlUploadPolicy:
        return cls(
            max_bytes=max_bytes,
            allowed_schemes=frozenset(allowed_schemes),
            allow_all_domains=allow_all_domains,
            allowed_domains=frozenset(allowed_domains or ()),
            fetch_timeout_ms=fetch_timeout_ms,
        )


@dataclass(frozen=True)
class FileBlob:
    """A named, immutable file ready for upload.  Consumed once, not retained."""

    name: str
    data: bytes
    mime_type: str = DEFAULT_MIME_TYPE

    @classmethod
    def from_base64(cls, name: str, content: str, mime_type: str | None = None) -> FileBlob:
        """Build a blob from inline base-64 content; MIME is guessed from the name."""
        data = decode_base64(content)
        guessed, _ = mimetypes.guess_type(name)
        return cls(name=name, data=data, mime_type=mime_type or guessed or DEFAULT_MIME_TYPE)

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class UrlFileSpec:
    name: str
    url: str
    mime_type: str | None = None


# -----------------------------------------------------------------------------
# Policy checks
# -----------------------------------------------------------------------------


def host_allowed(host: str, allowed_domains: Iterable[str]) -> bool:
    """
    True if ``host`` equals an allowed domain or is a strict subdomain of one.

    Matching is case-insensitive.  ``a.b.com`` is allowed by ``a.b.com`` or
    ``b.com`` but never by ``x.b.com``, and ``b.com.evil.net`` is never allowed
    by ``b.com``.
    """
    host = host.lower().rstrip(".")
    for domain in allowed_domains:
        domain = domain.lower().strip().rstrip(".")
        if not domain:
            continue
        if host == domain or host.endswith("." + domain):
            return True
    return False


def parse_url(url: str) -> httpx.URL:
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as exc:
        raise StoreGateError(ErrorKind.INVALID_URL, f"Invalid URL: {url}", cause=exc) from exc
    if not parsed.scheme or not parsed.host:
        raise StoreGateError(ErrorKind.INVALID_URL, f"Invalid URL: {url}")
    return parsed


def check_url_policy(url: httpx.URL, policy: UrlUploadPolicy) -> None:
    """
    Apply the scheme and domain allow-lists to an already-parsed URL.

    Raises
    ------
    StoreGateError(SCHEME_NOT_ALLOWED)
    StoreGateError(DOMAIN_NOT_ALLOWED)
    """
    if url.scheme not in policy.allowed_schemes:
        logger.warning("Rejected URL scheme %r for %s", url.scheme, url)
        raise StoreGateError(
            ErrorKind.SCHEME_NOT_ALLOWED,
            f"URL scheme '{url.scheme}' is not allowed. "
            f"Allowed schemes: {', '.join(sorted(policy.allowed_schemes))}",
        )

    if policy.allow_all_domains:
        return

    if not policy.allowed_domains:
        raise StoreGateError(ErrorKind.DOMAIN_NOT_ALLOWED, "No domains are allowed for URL uploads")

    if not host_allowed(url.host, policy.allowed_domains):
        logger.warning("Rejected URL host %r", url.host)
        raise StoreGateError(
            ErrorKind.DOMAIN_NOT_ALLOWED,
            f"Domain '{url.host.lower()}' is not allowed. "
            f"Allowed domains: {', '.join(sorted(policy.allowed_domains))}",
        )


# -----------------------------------------------------------------------------
# Cancellation
# -----------------------------------------------------------------------------


async def _cancel_when_set(token: asyncio.Event, task: asyncio.Task) -> None:
    await token.wait()
    task.cancel()


@asynccontextmanager
async def abort_scope(timeout_ms: int, cancellation: asyncio.Event | None = None) -> AsyncIterator[None]:
    """
    Run the enclosed block under a timer merged with an external token.

    Either source firing cancels the current task at its next suspension
    point; both surface as StoreGateError(TIMEOUT_OR_ABORTED).  Cancellation
    arriving from anywhere else is re-raised untouched.
    """
    if cancellation is not None and cancellation.is_set():
        raise StoreGateError(ErrorKind.TIMEOUT_OR_ABORTED, "URL fetch timeout or aborted")

    task = asyncio.current_task()
    watcher: asyncio.Task | None = None
    if cancellation is not None and task is not None:
        watcher = asyncio.create_task(_cancel_when_set(cancellation, task))

    delay = timeout_ms / 1000 if timeout_ms > 0 else None
    try:
        async with asyncio.timeout(delay):
            yield
    except TimeoutError as exc:
        raise StoreGateError(ErrorKind.TIMEOUT_OR_ABORTED, "URL fetch timeout or aborted", cause=exc) from exc
    except asyncio.CancelledError:
        if cancellation is not None and cancellation.is_set() and task is not None and task.uncancel() == 0:
            raise StoreGateError(ErrorKind.TIMEOUT_OR_ABORTED, "URL fetch timeout or aborted") from None
        raise
    finally:
        if watcher is not None:
            watcher.cancel()


# -----------------------------------------------------------------------------
# HTTP helpers
# -----------------------------------------------------------------------------


async def _send(
    client: httpx.AsyncClient,
    method: str,
    url: httpx.URL,
    policy: UrlUploadPolicy,
    *,
    stream: bool = False,
) -> httpx.Response:
    """Send ``method url``, following redirects only to policy-approved targets."""
    request = client.build_request(method, url)
    for _ in range(MAX_REDIRECTS + 1):
        response = await client.send(request, stream=stream, follow_redirects=False)
        if not response.is_redirect or response.next_request is None:
            return response
        await response.aclose()
        request = response.next_request
        check_url_policy(request.url, policy)
        logger.debug("Following redirect to %s", request.url)
    raise StoreGateError(ErrorKind.NETWORK_ERROR, f"Too many redirects fetching {url}")


def _declared_length(response: httpx.Response) -> int | None:
    raw = response.headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring unparseable content-length %r from %s", raw, response.url)
        return None


async def _read_bounded(response: httpx.Response, max_bytes: int) -> bytes:
    chunks: list[bytes] = []
    total = 0
    async for chunk in response.aiter_bytes():
        total += len(chunk)
        if total > max_bytes:
            chunks.clear()
            raise StoreGateError(
                ErrorKind.SIZE_EXCEEDED_STREAMING,
                f"File size ({total} bytes) exceeds maximum allowed size ({max_bytes} bytes)",
            )
        chunks.append(chunk)
    return b"".join(chunks)


async def _fetch(
    client: httpx.AsyncClient,
    url: httpx.URL,
    name: str,
    mime_type: str | None,
    policy: UrlUploadPolicy,
) -> FileBlob:
    head = await _send(client, "HEAD", url, policy)
    if not head.is_success:
        raise StoreGateError(
            ErrorKind.METADATA_REQUEST_FAILED,
            f"Failed to fetch URL headers: {head.status_code} {head.reason_phrase}",
        )

    declared = _declared_length(head)
    if declared is not None and declared > policy.max_bytes:
        raise StoreGateError(
            ErrorKind.SIZE_EXCEEDED_PREDECLARED,
            f"File size ({declared} bytes) exceeds maximum allowed size ({policy.max_bytes} bytes)",
        )

    response = await _send(client, "GET", url, policy, stream=True)
    try:
        if not response.is_success:
            raise StoreGateError(
                ErrorKind.BODY_REQUEST_FAILED,
                f"Failed to fetch URL: {response.status_code} {response.reason_phrase}",
            )
        if response.status_code in _NULL_BODY_STATUSES:
            raise StoreGateError(ErrorKind.EMPTY_BODY, "Response body is empty")
        data = await _read_bounded(response, policy.max_bytes)
        content_type = response.headers.get("content-type")
    finally:
        await response.aclose()

    logger.debug("Fetched %d bytes from %s", len(data), url)
    return FileBlob(name=name, data=data, mime_type=mime_type or content_type or DEFAULT_MIME_TYPE)


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------


async def fetch_url(
    url: str,
    name: str,
    *,
    policy: UrlUploadPolicy,
    mime_type: str | None = None,
    cancellation: asyncio.Event | None = None,
    client: httpx.AsyncClient | None = None,
) -> FileBlob:
    """
    Download ``url`` into a ``FileBlob`` under ``policy``.

    Parameters
    ----------
    url          : Absolute URL of the remote file.
    name         : Name the blob is uploaded under.
    policy       : Scheme/domain allow-lists, size bound and timeout.
    mime_type    : Optional override for the response content type.
    cancellation : Optional token; setting it aborts the download.
    client       : Optional shared ``httpx.AsyncClient``.  When omitted a
                   client is created for this call and closed afterwards.

    Raises
    ------
    StoreGateError with kind INVALID_URL, SCHEME_NOT_ALLOWED,
    DOMAIN_NOT_ALLOWED, METADATA_REQUEST_FAILED, SIZE_EXCEEDED_PREDECLARED,
    BODY_REQUEST_FAILED, SIZE_EXCEEDED_STREAMING, EMPTY_BODY,
    TIMEOUT_OR_ABORTED or NETWORK_ERROR.
    """
    parsed = parse_url(url)
    check_url_policy(parsed, policy)

    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=_CLIENT_TIMEOUT)
    try:
        async with abort_scope(policy.fetch_timeout_ms, cancellation):
            return await _fetch(client, parsed, name, mime_type, policy)
    except httpx.TimeoutException as exc:
        raise StoreGateError(ErrorKind.TIMEOUT_OR_ABORTED, "URL fetch timeout or aborted", cause=exc) from exc
    except httpx.TransportError as exc:
        raise StoreGateError(ErrorKind.NETWORK_ERROR, f"Failed to fetch {url}: {exc}", cause=exc) from exc
    finally:
        if owns_client:
            await client.aclose()


async def fetch_urls(
    specs: Sequence[UrlFileSpec],
    *,
    policy: UrlUploadPolicy,
    cancellation: asyncio.Event | None = None,
    client: httpx.AsyncClient | None = None,
) -> list[FileBlob]:
    """
    Fetch several files concurrently.

    The first failure cancels the remaining downloads and is re-raised on its
    own (not wrapped in an ExceptionGroup).
    """
    try:
        async with asyncio.TaskGroup() as group:
            tasks = [
                group.create_task(
                    fetch_url(
                        spec.url,
                        spec.name,
                        policy=policy,
                        mime_type=spec.mime_type,
                        cancellation=cancellation,
                        client=client,
                    )
                )
                for spec in specs
            ]
    except ExceptionGroup as group_error:
        raise group_error.exceptions[0]
    return [task.result() for task in tasks]
