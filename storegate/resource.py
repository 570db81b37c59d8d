"""
storegate/resource.py
-----------------------------------------------------------------------------
Parse the textual locators callers use for stored content into a
structured ``Resource``.

Accepted forms
--------------
Checked in this order; all three resolve to the same ``Resource`` when the
content identifier and the remainder are equal:

    <cid>/<rest>            bafy.../readme.txt
    /ipfs/<cid>/<rest>      /ipfs/bafy.../readme.txt
    ipfs://<cid>/<rest>     ipfs://bafy.../readme.txt

Only the identifier is interpreted.  Everything after it is kept verbatim in
``pathname`` (nested segments, query strings, fragments) with no case or
percent-encoding normalisation.  ``pathname`` always begins with ``/``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

from multiformats import CID

from storegate.errors import ErrorKind, StoreGateError

# Identifier ends at the first path, query or fragment delimiter.
_CID_END = re.compile(r"[/?#]")

_URL_SCHEME = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")

_PREFIXES: tuple[str, ...] = ("/ipfs/", "ipfs://")


@dataclass(frozen=True)
class Resource:
    """A content identifier plus the opaque path that follows it."""

    cid: CID
    pathname: str
    protocol: Literal["ipfs"] = "ipfs"

    @property
    def path_with_cid(self) -> str:
        """``<cid><pathname>`` – the fragment that follows ``/ipfs/`` in a gateway URL."""
        return f"{self.cid}{self.pathname}"


def _split_identifier(rest: str) -> tuple[str, str]:
    match = _CID_END.search(rest)
    if match is None:
        return rest, "/"
    identifier, remainder = rest[: match.start()], rest[match.start() :]
    if not remainder.startswith("/"):
        # "<cid>?x=1" keeps its query but still gets the leading slash.
        remainder = "/" + remainder
    return identifier, remainder


def parse_ipfs_path(path: str) -> Resource:
    """
    Parse ``path`` into a ``Resource``.

    Parameters
    ----------
    path : Locator in one of the three accepted forms.

    Returns
    -------
    Resource with ``protocol="ipfs"``, the decoded CID and the remainder.

    Raises
    ------
    StoreGateError(INVALID_PATH)
        If the input is empty, uses an unknown prefix, or the identifier
        part is not a structurally valid CID.
    """
    if not path or not path.strip():
        raise StoreGateError(ErrorKind.INVALID_PATH, "Path must not be empty")

    rest = path
    for prefix in _PREFIXES:
        if path.startswith(prefix):
            rest = path[len(prefix) :]
            break
    else:
        if path.startswith("/") or _URL_SCHEME.match(path):
            raise StoreGateError(
                ErrorKind.INVALID_PATH,
                f"Unrecognised path format: {path!r}. "
                "Expected 'cid/path', '/ipfs/cid/path' or 'ipfs://cid/path'",
            )

    identifier, pathname = _split_identifier(rest)
    if not identifier:
        raise StoreGateError(ErrorKind.INVALID_PATH, f"Missing content identifier in {path!r}")

    try:
        cid = CID.decode(identifier)
    except (ValueError, KeyError) as exc:
        raise StoreGateError(
            ErrorKind.INVALID_PATH,
            f"Invalid content identifier {identifier!r} in path {path!r}",
            cause=exc,
        ) from exc

    return Resource(cid=cid, pathname=pathname)
