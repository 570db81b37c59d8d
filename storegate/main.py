"""
storegate/main.py
-----------------------------------------------------------------------------
FastAPI application entrypoint for the storage gateway.

This module is a **thin routing layer**: each route handler orchestrates
calls to domain modules and returns the result.  All behaviour lives in
dedicated modules:

Domain modules
~~~~~~~~~~~~~~
- ``storegate.config``    – Environment-driven settings and URL policy.
- ``storegate.schema``    – Pydantic v2 request / response models.
- ``storegate.storage``   – Backend lifecycle and upload orchestration.
- ``storegate.ingest``    – Policy-enforced URL downloads.
- ``storegate.retrieve``  – Gateway archive fetch and file export.
- ``storegate.errors``    – The single tagged error type.

Run with:
    uvicorn storegate.main:app --host 127.0.0.1 --port 3001

Endpoints
---------
GET  /api/health     → version and backend connection state
POST /api/upload     → upload inline base64 content or a file fetched from a URL
POST /api/retrieve   → fetch a stored file back from the gateway as base64

Error responses
---------------
Every ``StoreGateError`` becomes a JSON body ``{name, kind, message, cause}``
with a status chosen by the error's category (see ``_STATUS_BY_CATEGORY``).
"""

from __future__ import annotations

import importlib
import logging
import tomllib
from functools import lru_cache
from pathlib import Path

from fastapi import Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse

from storegate.config import Settings, load_settings
from storegate.errors import ErrorCategory, ErrorKind, StoreGateError
from storegate.ingest import UrlFileSpec
from storegate.retrieve import retrieve
from storegate.schema import (
    HealthResponse,
    RetrieveRequest,
    RetrieveResponse,
    UploadRequest,
    UploadResponse,
)
from storegate.storage import (
    DEFAULT_RETRIES,
    InitState,
    StorageBackend,
    StorageConfig,
    StorageFacade,
    UploadOptions,
    build_client_header,
)

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Bootstrap
# -----------------------------------------------------------------------------

_HERE = Path(__file__).parent

# Read version from pyproject.toml (single source of truth).
_PYPROJECT = _HERE.parent / "pyproject.toml"
with open(_PYPROJECT, "rb") as _f:
    _APP_VERSION: str = tomllib.load(_f)["project"]["version"]

_STATUS_BY_CATEGORY: dict[ErrorCategory, int] = {
    ErrorCategory.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorCategory.POLICY: status.HTTP_403_FORBIDDEN,
    ErrorCategory.NETWORK: status.HTTP_502_BAD_GATEWAY,
    ErrorCategory.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorCategory.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCategory.BACKEND: status.HTTP_502_BAD_GATEWAY,
    ErrorCategory.NOT_INITIALIZED: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCategory.MISSING_CREDENTIAL: status.HTTP_401_UNAUTHORIZED,
}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


def load_backend(target: str) -> StorageBackend:
    """
    Import ``module:attribute`` and call it to obtain the storage backend.

    Raises
    ------
    StoreGateError(BACKEND_ERROR) if the target cannot be imported or called.
    """
    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        raise StoreGateError(
            ErrorKind.BACKEND_ERROR,
            f"STORAGE_BACKEND must look like 'package.module:factory', got {target!r}",
        )
    try:
        factory = getattr(importlib.import_module(module_name), attribute)
        return factory()
    except Exception as exc:
        raise StoreGateError(
            ErrorKind.BACKEND_ERROR, f"Cannot load storage backend {target!r}: {exc}", cause=exc
        ) from exc


class StorageProvider:
    """
    Hands out facades: one shared facade for the server's own delegation,
    and a fresh one per request that brings its own delegation or gateway.
    """

    def __init__(self, settings: Settings, backend: StorageBackend) -> None:
        self._settings = settings
        self._backend = backend
        self._default: StorageFacade | None = None

    @property
    def default_connected(self) -> bool:
        return self._default is not None and self._default.is_connected()

    def _config(self, delegation: str | None, gateway_url: str | None) -> StorageConfig:
        return StorageConfig(
            signer=self._settings.private_key,
            delegation=delegation or self._settings.delegation,
            gateway_url=gateway_url or self._settings.gateway_url,
            client_header=build_client_header(_APP_VERSION),
        )

    def facade(self, delegation: str | None = None, gateway_url: str | None = None) -> StorageFacade:
        if delegation or gateway_url:
            return StorageFacade(self._config(delegation, gateway_url), self._backend)
        # A failed facade stays failed; the next request gets a fresh attempt.
        if self._default is None or self._default.state is InitState.FAILED:
            self._default = StorageFacade(self._config(None, None), self._backend)
        return self._default


@lru_cache(maxsize=1)
def get_storage() -> StorageProvider:
    settings = get_settings()
    if settings.storage_backend is None:
        raise StoreGateError(
            ErrorKind.BACKEND_ERROR, "No storage backend configured; set STORAGE_BACKEND"
        )
    return StorageProvider(settings, load_backend(settings.storage_backend))


def get_optional_storage() -> StorageProvider | None:
    """Like ``get_storage`` but None when no backend is configured."""
    try:
        return get_storage()
    except StoreGateError as exc:
        logger.debug("Storage unavailable: %s", exc.message)
        return None


# -----------------------------------------------------------------------------
# FastAPI app
# -----------------------------------------------------------------------------

app = FastAPI(
    title="storegate",
    description=(
        "Ingestion and retrieval gateway in front of a content-addressed "
        "storage network: policy-checked URL uploads, inline uploads, and "
        "archive-verified retrieval through a public gateway."
    ),
    version=_APP_VERSION,
)


@app.exception_handler(StoreGateError)
async def storegate_error_handler(request: Request, exc: StoreGateError) -> JSONResponse:
    """Translate a ``StoreGateError`` into a JSON error body."""
    status_code = _STATUS_BY_CATEGORY[exc.category]
    logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.kind.value)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------


@app.get("/api/health", response_model=HealthResponse, summary="Service health")
def health(storage: StorageProvider | None = Depends(get_optional_storage)) -> HealthResponse:
    """
    Report the service version and whether the default storage client has
    connected.  Never fails: an unconfigured backend reads as not connected.
    """
    connected = storage is not None and storage.default_connected
    return HealthResponse(version=_APP_VERSION, connected=connected)


@app.post("/api/upload", response_model=UploadResponse, summary="Upload a file")
async def upload(
    req: UploadRequest,
    storage: StorageProvider = Depends(get_storage),
    settings: Settings = Depends(get_settings),
) -> UploadResponse:
    """
    Upload one file, given either as base64 ``file`` content or as a ``url``
    to fetch under the server's URL policy.

    Raises
    ------
    StoreGateError(MISSING_CREDENTIAL) when neither the request nor the
    server configuration supplies a delegation; any upload or ingestion
    failure otherwise (translated by ``storegate_error_handler``).
    """
    if not req.delegation and not settings.delegation:
        raise StoreGateError(
            ErrorKind.MISSING_CREDENTIAL,
            "Delegation is required. Please provide it either in the request "
            "or via the DELEGATION environment variable.",
        )

    facade = storage.facade(delegation=req.delegation, gateway_url=req.gateway_url)
    await facade.initialize()

    options = UploadOptions(retries=DEFAULT_RETRIES, publish_to_filecoin=req.publish_to_filecoin)
    if req.file:
        result = await facade.upload_files(
            [(req.name, req.file)], options, max_bytes=settings.max_file_size
        )
    else:
        result = await facade.upload_files_from_urls(
            [UrlFileSpec(name=req.name, url=req.url or "", mime_type=req.mime_type)],
            options,
            settings.url_policy(),
        )

    return UploadResponse(**result.to_dict())


@app.post("/api/retrieve", response_model=RetrieveResponse, summary="Retrieve a stored file")
async def retrieve_file(
    req: RetrieveRequest,
    settings: Settings = Depends(get_settings),
) -> RetrieveResponse:
    """
    Fetch ``req.filepath`` from the configured gateway and return its bytes
    as base64 (multibase base64 when ``use_multiformat_base64`` is set).
    """
    result = await retrieve(
        req.filepath,
        settings.gateway_url,
        self_describing=req.use_multiformat_base64,
    )
    return RetrieveResponse(data=result.data, mime_type=result.mime_type)
