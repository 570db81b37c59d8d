"""
storegate/errors.py
-----------------------------------------------------------------------------
Single error type for every failure the gateway can report.

Kinds
-----
There are no subclasses.  Callers branch on ``exc.kind``, a member of the
closed ``ErrorKind`` enum.

Every kind belongs to exactly one coarse category (validation, policy,
network, timeout, not_found, backend, not_initialized, missing_credential).
The HTTP layer maps categories to status codes; nothing else should need to.

Causes
------
Wrapped failures keep the underlying exception twice: as ``exc.cause`` for
serialisation and as ``__cause__`` (``raise ... from``) for tracebacks.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    POLICY = "policy"
    NETWORK = "network"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    BACKEND = "backend"
    NOT_INITIALIZED = "not_initialized"
    MISSING_CREDENTIAL = "missing_credential"


class ErrorKind(str, Enum):
    """Every failure the gateway can report.  Closed: add here, then to _CATEGORIES."""

    INVALID_PATH = "invalid_path"
    INVALID_URL = "invalid_url"
    INVALID_ENCODING = "invalid_encoding"
    INVALID_POLICY = "invalid_policy"
    SCHEME_NOT_ALLOWED = "scheme_not_allowed"
    DOMAIN_NOT_ALLOWED = "domain_not_allowed"
    FILE_TOO_LARGE = "file_too_large"
    METADATA_REQUEST_FAILED = "metadata_request_failed"
    SIZE_EXCEEDED_PREDECLARED = "size_exceeded_predeclared"
    BODY_REQUEST_FAILED = "body_request_failed"
    SIZE_EXCEEDED_STREAMING = "size_exceeded_streaming"
    EMPTY_BODY = "empty_body"
    TIMEOUT_OR_ABORTED = "timeout_or_aborted"
    NETWORK_ERROR = "network_error"
    GATEWAY_ERROR = "gateway_error"
    INVALID_ARCHIVE = "invalid_archive"
    BLOCK_NOT_FOUND = "block_not_found"
    PATH_NOT_FOUND = "path_not_found"
    NOT_A_FILE = "not_a_file"
    UNSUPPORTED_CONTENT = "unsupported_content"
    BACKEND_ERROR = "backend_error"
    NOT_INITIALIZED = "not_initialized"
    MISSING_CREDENTIAL = "missing_credential"


_CATEGORIES: dict[ErrorKind, ErrorCategory] = {
    ErrorKind.INVALID_PATH: ErrorCategory.VALIDATION,
    ErrorKind.INVALID_URL: ErrorCategory.VALIDATION,
    ErrorKind.INVALID_ENCODING: ErrorCategory.VALIDATION,
    ErrorKind.INVALID_POLICY: ErrorCategory.VALIDATION,
    ErrorKind.INVALID_ARCHIVE: ErrorCategory.VALIDATION,
    ErrorKind.NOT_A_FILE: ErrorCategory.VALIDATION,
    ErrorKind.UNSUPPORTED_CONTENT: ErrorCategory.VALIDATION,
    ErrorKind.SCHEME_NOT_ALLOWED: ErrorCategory.POLICY,
    ErrorKind.DOMAIN_NOT_ALLOWED: ErrorCategory.POLICY,
    ErrorKind.FILE_TOO_LARGE: ErrorCategory.POLICY,
    ErrorKind.SIZE_EXCEEDED_PREDECLARED: ErrorCategory.POLICY,
    ErrorKind.SIZE_EXCEEDED_STREAMING: ErrorCategory.POLICY,
    ErrorKind.METADATA_REQUEST_FAILED: ErrorCategory.NETWORK,
    ErrorKind.BODY_REQUEST_FAILED: ErrorCategory.NETWORK,
    ErrorKind.EMPTY_BODY: ErrorCategory.NETWORK,
    ErrorKind.NETWORK_ERROR: ErrorCategory.NETWORK,
    ErrorKind.GATEWAY_ERROR: ErrorCategory.NETWORK,
    ErrorKind.TIMEOUT_OR_ABORTED: ErrorCategory.TIMEOUT,
    ErrorKind.BLOCK_NOT_FOUND: ErrorCategory.NOT_FOUND,
    ErrorKind.PATH_NOT_FOUND: ErrorCategory.NOT_FOUND,
    ErrorKind.BACKEND_ERROR: ErrorCategory.BACKEND,
    ErrorKind.NOT_INITIALIZED: ErrorCategory.NOT_INITIALIZED,
    ErrorKind.MISSING_CREDENTIAL: ErrorCategory.MISSING_CREDENTIAL,
}


class StoreGateError(Exception):
    """
    Tagged failure: ``kind`` + human-readable ``message`` + optional ``cause``.

    Parameters
    ----------
    kind    : ErrorKind member identifying the failure.
    message : Text suitable for returning to the caller verbatim.
    cause   : The underlying exception, if this error wraps one.  Also set as
              ``__cause__`` so tracebacks show the full chain even when the
              error is raised without ``from``.
    """

    def __init__(self, kind: ErrorKind, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORIES[self.kind]

    def to_dict(self) -> dict[str, Any]:
        """
        Render the error as a JSON-friendly dict.

        ``cause`` is the wrapped exception's message (or None) rather than the
        exception object, so the result can go straight into a response body.
        """
        return {
            "name": type(self).__name__,
            "kind": self.kind.value,
            "message": self.message,
            "cause": str(self.cause) if self.cause is not None else None,
        }

    def __repr__(self) -> str:
        return f"StoreGateError({self.kind.name}, {self.message!r})"
