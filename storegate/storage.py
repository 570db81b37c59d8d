"""
storegate/storage.py
-----------------------------------------------------------------------------
Lifecycle and upload orchestration around an external storage backend.

The backend itself (signing, delegation handling, chunking, network upload,
Filecoin publication) lives outside this package.  It is consumed only
through the ``StorageBackend`` / ``BackendClient`` protocols below.

Initialisation state machine
----------------------------
    UNINITIALIZED ──first initialize()──▶ INITIALIZING(shared task)
    INITIALIZING  ──connect ok──────────▶ READY(client)
    INITIALIZING  ──connect failed──────▶ FAILED(error)

The first caller moves the state past UNINITIALIZED without awaiting
anything in between, so it is the only writer.  Every other caller,
concurrent or later, awaits the same shared task or reads the terminal
state.  FAILED is terminal for the instance: build a new facade to retry.

Per-entry reporting
-------------------
The backend reports each committed directory entry by calling
``UploadLedger.record(name, cid)`` on the ledger passed into the commit.
Entries without a name are structural (the directory node itself) and are
not user files, so the ledger ignores them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import httpx
from multiformats import CID

from storegate.errors import ErrorKind, StoreGateError
from storegate.ingest import FileBlob, UrlFileSpec, UrlUploadPolicy, fetch_urls

logger = logging.getLogger(__name__)

DEFAULT_GATEWAY_URL = "https://storacha.link"

# Identity of the service that verifies delegations.
STORAGE_SERVICE_DID = "did:web:web3.storage"

DEFAULT_RETRIES = 3


def build_client_header(version: str, product: str = "storegate") -> str:
    """``X-Client`` value advertising this gateway's major version to the backend."""
    return f"{product}/{version.split('.')[0]}"


def gateway_url_for(gateway_url: str | httpx.URL, root: CID | str) -> str:
    """``{gateway}/ipfs/{root}``."""
    return str(httpx.URL(str(gateway_url)).join(f"/ipfs/{root}"))


# -----------------------------------------------------------------------------
# Backend contract
# -----------------------------------------------------------------------------


class UploadLedger:
    """Accumulates ``name -> CID`` as the backend commits directory entries."""

    def __init__(self) -> None:
        self._files: dict[str, CID] = {}

    def record(self, name: str | None, cid: CID | str) -> None:
        if not name:
            return
        self._files[name] = cid if isinstance(cid, CID) else CID.decode(cid)

    @property
    def files(self) -> dict[str, CID]:
        return dict(self._files)

    def __len__(self) -> int:
        return len(self._files)


class BackendClient(Protocol):
    async def upload_directory(
        self,
        blobs: Sequence[FileBlob],
        *,
        retries: int,
        cancellation: asyncio.Event | None,
        publish_to_filecoin: bool,
        ledger: UploadLedger,
    ) -> CID | str: ...


class StorageBackend(Protocol):
    async def connect(
        self,
        principal: Any,
        delegation: Any,
        *,
        service_id: str,
        headers: dict[str, str],
    ) -> BackendClient: ...


# -----------------------------------------------------------------------------
# Types
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class StorageConfig:
    """
    signer      : Private signing key (opaque to this package).
    delegation  : Delegation proof for the storage space (opaque).
    gateway_url : Gateway used to build result URLs and for retrieval.
    client_header : Value sent as ``X-Client`` on backend requests.
    """

    signer: Any
    delegation: Any
    gateway_url: str = DEFAULT_GATEWAY_URL
    client_header: str = field(default_factory=lambda: build_client_header("0"))


@dataclass(frozen=True)
class UploadOptions:
    retries: int = DEFAULT_RETRIES
    cancellation: asyncio.Event | None = None
    publish_to_filecoin: bool = False


@dataclass(frozen=True)
class UploadResult:
    root: CID
    url: str
    files: dict[str, CID]

    def to_dict(self) -> dict[str, Any]:
        return {
            "root": str(self.root),
            "url": self.url,
            "files": {name: str(cid) for name, cid in self.files.items()},
        }


class InitState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


# -----------------------------------------------------------------------------
# Facade
# -----------------------------------------------------------------------------


class StorageFacade:
    """
    Owns one backend connection and runs uploads through it.

    Parameters
    ----------
    config  : Credentials, gateway and client header.
    backend : Factory for the backend connection.
    """

    def __init__(self, config: StorageConfig, backend: StorageBackend) -> None:
        self._config = config
        self._backend = backend
        self._state = InitState.UNINITIALIZED
        self._pending: asyncio.Task[BackendClient] | None = None
        self._client: BackendClient | None = None
        self._error: StoreGateError | None = None

    @property
    def state(self) -> InitState:
        return self._state

    @property
    def config(self) -> StorageConfig:
        return self._config

    @property
    def gateway_url(self) -> str:
        return self._config.gateway_url

    def is_connected(self) -> bool:
        return self._state is InitState.READY

    # -- lifecycle ------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Connect to the backend exactly once.

        Safe to call any number of times, concurrently or not: all callers
        observe the outcome of the single connection attempt.

        Raises
        ------
        StoreGateError(MISSING_CREDENTIAL) if the signer or delegation is absent.
        StoreGateError(BACKEND_ERROR)      if the connection attempt failed.
        """
        if self._state is InitState.UNINITIALIZED:
            missing = self._missing_credential()
            if missing is not None:
                self._fail(missing)
            else:
                self._state = InitState.INITIALIZING
                self._pending = asyncio.create_task(self._connect())

        if self._state is InitState.READY:
            return
        if self._error is not None:
            raise self._error
        if self._pending is None:
            raise StoreGateError(ErrorKind.NOT_INITIALIZED, "Client not initialized")

        # shield: a caller giving up must not cancel the shared attempt.
        await asyncio.shield(self._pending)

    def _missing_credential(self) -> StoreGateError | None:
        if not self._config.signer:
            return StoreGateError(ErrorKind.MISSING_CREDENTIAL, "Private key is required")
        if not self._config.delegation:
            return StoreGateError(ErrorKind.MISSING_CREDENTIAL, "Delegation is required")
        return None

    def _fail(self, error: StoreGateError) -> None:
        self._state = InitState.FAILED
        self._error = error

    async def _connect(self) -> BackendClient:
        logger.info("Initializing storage client")
        try:
            client = await self._backend.connect(
                self._config.signer,
                self._config.delegation,
                service_id=STORAGE_SERVICE_DID,
                headers={"X-Client": self._config.client_header},
            )
        except Exception as exc:
            error = StoreGateError(
                ErrorKind.BACKEND_ERROR,
                f"Failed to initialize storage client: {exc}",
                cause=exc,
            )
            self._fail(error)
            logger.warning("Storage client initialization failed: %s", exc)
            raise error from exc
        self._client = client
        self._state = InitState.READY
        logger.info("Storage client ready")
        return client

    # -- uploads --------------------------------------------------------------

    def _ready_client(self, options: UploadOptions) -> BackendClient:
        if self._state is not InitState.READY or self._client is None:
            raise StoreGateError(ErrorKind.NOT_INITIALIZED, "Client not initialized")
        if options.cancellation is not None and options.cancellation.is_set():
            raise StoreGateError(ErrorKind.TIMEOUT_OR_ABORTED, "Upload aborted")
        return self._client

    async def upload_directory(
        self,
        blobs: Sequence[FileBlob],
        options: UploadOptions = UploadOptions(),
    ) -> UploadResult:
        """
        Commit ``blobs`` as one directory and return its root and entries.

        Retries are the backend's business; ``options.retries`` is passed
        through untouched.  Publication beyond the private network happens
        only when ``options.publish_to_filecoin`` is set.

        Raises
        ------
        StoreGateError(NOT_INITIALIZED)    unless ``initialize`` succeeded.
        StoreGateError(TIMEOUT_OR_ABORTED) if the token is already set.
        StoreGateError(BACKEND_ERROR)      if the commit fails.
        """
        client = self._ready_client(options)
        ledger = UploadLedger()
        try:
            root = await client.upload_directory(
                blobs,
                retries=options.retries,
                cancellation=options.cancellation,
                publish_to_filecoin=options.publish_to_filecoin,
                ledger=ledger,
            )
            root_cid = root if isinstance(root, CID) else CID.decode(root)
        except StoreGateError:
            raise
        except Exception as exc:
            raise StoreGateError(ErrorKind.BACKEND_ERROR, f"Upload failed: {exc}", cause=exc) from exc

        logger.info("Uploaded %d file(s) under root %s", len(ledger), root_cid)
        return UploadResult(
            root=root_cid,
            url=gateway_url_for(self.gateway_url, root_cid),
            files=ledger.files,
        )

    async def upload_files(
        self,
        files: Sequence[tuple[str, str]],
        options: UploadOptions = UploadOptions(),
        *,
        max_bytes: int | None = None,
    ) -> UploadResult:
        """
        Upload ``(name, base64 content)`` pairs.

        ``max_bytes`` bounds each decoded file; larger files fail with
        FILE_TOO_LARGE before anything is sent to the backend.
        """
        self._ready_client(options)
        blobs = [FileBlob.from_base64(name, content) for name, content in files]
        if max_bytes is not None:
            for blob in blobs:
                if blob.size > max_bytes:
                    raise StoreGateError(
                        ErrorKind.FILE_TOO_LARGE,
                        f"File size ({blob.size} bytes) exceeds maximum allowed size ({max_bytes} bytes)",
                    )
        return await self.upload_directory(blobs, options)

    async def upload_files_from_urls(
        self,
        specs: Sequence[UrlFileSpec],
        options: UploadOptions = UploadOptions(),
        policy: UrlUploadPolicy | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> UploadResult:
        """Fetch each URL under ``policy``, then upload the results as one directory."""
        self._ready_client(options)
        if policy is None:
            raise StoreGateError(ErrorKind.INVALID_POLICY, "A URL upload policy is required")
        blobs = await fetch_urls(specs, policy=policy, cancellation=options.cancellation, client=http_client)
        return await self.upload_directory(blobs, options)
