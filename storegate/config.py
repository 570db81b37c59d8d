"""
storegate/config.py
-----------------------------------------------------------------------------
Process configuration, read from environment variables.

``load_dotenv()`` runs at import so a local ``.env`` file is honoured; real
environment variables always win over it.

Environment variables
---------------------
MAX_FILE_SIZE          Max decoded size of inline uploads, bytes (100 MiB).
MAX_URL_FILE_SIZE      Max size of URL uploads, bytes (1 GiB).
ALLOWED_URL_SCHEMES    Comma list from http, https, ftp, ftps ("https,http").
URL_FETCH_TIMEOUT      Whole-download deadline for URL uploads, ms (300000).
ALLOW_ALL_URL_DOMAINS  "true" disables the domain allow-list (false).
ALLOWED_URL_DOMAINS    Comma list of allowed domains; subdomains included.
GATEWAY_URL            Gateway for retrieval and result URLs
                       (https://storacha.link).
PRIVATE_KEY            Signing key handed to the storage backend.
DELEGATION             Default delegation proof handed to the backend.
STORAGE_BACKEND        ``module:attribute`` of a zero-argument callable that
                       returns the storage backend.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from dotenv import load_dotenv

from storegate.ingest import UrlUploadPolicy
from storegate.storage import DEFAULT_GATEWAY_URL

# Load .env if present (no-op if the file doesn't exist)
load_dotenv()

VALID_URL_SCHEMES: tuple[str, ...] = ("http", "https", "ftp", "ftps")


@dataclass(frozen=True)
class Settings:
    max_file_size: int = 104_857_600
    max_url_file_size: int = 1_073_741_824
    allowed_url_schemes: tuple[str, ...] = ("https", "http")
    url_fetch_timeout_ms: int = 300_000
    allow_all_url_domains: bool = False
    allowed_url_domains: tuple[str, ...] = ()
    gateway_url: str = DEFAULT_GATEWAY_URL
    private_key: str | None = None
    delegation: str | None = None
    storage_backend: str | None = None

    def url_policy(self) -> UrlUploadPolicy:
        return UrlUploadPolicy.build(
            max_bytes=self.max_url_file_size,
            allowed_schemes=self.allowed_url_schemes,
            allow_all_domains=self.allow_all_url_domains,
            allowed_domains=self.allowed_url_domains,
            fetch_timeout_ms=self.url_fetch_timeout_ms,
        )


def _int(env: Mapping[str, str], key: str, default: int, error: str) -> int:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(error) from None
    if value < 0:
        raise ValueError(error)
    return value


def _csv(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """
    Build ``Settings`` from ``env`` (defaults to ``os.environ``).

    Raises
    ------
    ValueError
        With the offending setting named in the message, for negative or
        non-numeric sizes and timeouts, an empty scheme list, or a scheme
        outside ``VALID_URL_SCHEMES``.
    """
    env = os.environ if env is None else env

    max_file_size = _int(env, "MAX_FILE_SIZE", Settings.max_file_size, "Invalid max file size")
    max_url_file_size = _int(
        env, "MAX_URL_FILE_SIZE", Settings.max_url_file_size, "Invalid max URL file size"
    )
    url_fetch_timeout_ms = _int(
        env, "URL_FETCH_TIMEOUT", Settings.url_fetch_timeout_ms, "Invalid URL fetch timeout"
    )

    schemes = _csv(env.get("ALLOWED_URL_SCHEMES") or "https,http")
    if not schemes:
        raise ValueError("At least one URL scheme must be allowed")
    for scheme in schemes:
        if scheme not in VALID_URL_SCHEMES:
            raise ValueError(
                f"Invalid URL scheme: {scheme}. Allowed schemes: {', '.join(VALID_URL_SCHEMES)}"
            )

    return Settings(
        max_file_size=max_file_size,
        max_url_file_size=max_url_file_size,
        allowed_url_schemes=schemes,
        url_fetch_timeout_ms=url_fetch_timeout_ms,
        allow_all_url_domains=env.get("ALLOW_ALL_URL_DOMAINS", "").strip().lower() == "true",
        allowed_url_domains=_csv(env.get("ALLOWED_URL_DOMAINS")),
        gateway_url=env.get("GATEWAY_URL", "").strip() or DEFAULT_GATEWAY_URL,
        private_key=env.get("PRIVATE_KEY") or None,
        delegation=env.get("DELEGATION") or None,
        storage_backend=env.get("STORAGE_BACKEND", "").strip() or None,
    )
