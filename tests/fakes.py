"""In-memory stand-ins for the storage backend and the public gateway."""

from __future__ import annotations

import asyncio

import httpx
from multiformats import CID

from storegate.storage import UploadLedger
from tests.carfixtures import DagBuilder

GATEWAY = "https://gateway.test"


class FakeBackendClient:
    """
    Stands in for the storage network: builds a real UnixFS directory from
    the blobs so the archive can be served back by ``gateway_transport``.
    """

    def __init__(self) -> None:
        self.dag = DagBuilder()
        self.uploads: list[dict] = []
        self.fail_with: Exception | None = None

    async def upload_directory(self, blobs, *, retries, cancellation, publish_to_filecoin, ledger: UploadLedger):
        self.uploads.append(
            {
                "names": [blob.name for blob in blobs],
                "retries": retries,
                "publish_to_filecoin": publish_to_filecoin,
            }
        )
        if self.fail_with is not None:
            raise self.fail_with
        entries = {blob.name: self.dag.file(blob.data, chunk_size=64) for blob in blobs}
        for name, cid in entries.items():
            ledger.record(name, cid)
        root = self.dag.directory(entries)
        # The directory node itself is reported without a name.
        ledger.record("", root)
        return root


class FakeBackend:
    def __init__(self, *, fail_with: Exception | None = None, delay: float = 0.0) -> None:
        self.client = FakeBackendClient()
        self.connect_calls: list[dict] = []
        self.fail_with = fail_with
        self.delay = delay

    async def connect(self, principal, delegation, *, service_id, headers):
        self.connect_calls.append(
            {"principal": principal, "delegation": delegation, "service_id": service_id, "headers": headers}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        return self.client


def gateway_transport(dag: DagBuilder, seen: list[httpx.Request] | None = None) -> httpx.MockTransport:
    """A gateway that answers ``/ipfs/<root>/...?format=car`` with every block it knows."""

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if request.url.params.get("format") != "car":
            return httpx.Response(400, text="expected format=car")
        root = CID.decode(request.url.path.split("/")[2])
        return httpx.Response(
            200,
            content=dag.car([root]),
            headers={"content-type": "application/vnd.ipld.car; version=1"},
        )

    return httpx.MockTransport(handler)
