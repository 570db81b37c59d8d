"""Tests for storegate/retrieve.py – gateway archive fetch and export."""

from __future__ import annotations

import asyncio
import base64
import logging

import httpx
import pytest
from multiformats import multibase

from storegate.errors import ErrorKind, StoreGateError
from storegate.resource import parse_ipfs_path
from storegate.retrieve import RetrieveResult, archive_url, retrieve
from tests.carfixtures import DagBuilder
from tests.fakes import GATEWAY, gateway_transport


def _retrieve(transport: httpx.MockTransport, filepath: str, **kwargs) -> RetrieveResult:
    async def run() -> RetrieveResult:
        async with httpx.AsyncClient(transport=transport) as client:
            return await retrieve(filepath, GATEWAY, client=client, **kwargs)

    return asyncio.run(run())


def _site() -> tuple[DagBuilder, object]:
    dag = DagBuilder()
    readme = dag.file(b"hello from the archive\n" * 20, chunk_size=50)
    root = dag.directory({"readme.txt": readme, "blob": dag.raw(b"\x00\x01\x02")})
    return dag, root


class TestArchiveUrl:
    def test_shape(self) -> None:
        _, root = _site()
        url = archive_url(parse_ipfs_path(f"{root}/readme.txt"), GATEWAY)
        assert str(url) == f"{GATEWAY}/ipfs/{root}/readme.txt?format=car"

    def test_existing_query_kept(self) -> None:
        _, root = _site()
        url = archive_url(parse_ipfs_path(f"{root}/readme.txt?download=true"), GATEWAY)
        assert url.params.get("download") == "true"
        assert url.params.get("format") == "car"


class TestRetrieve:
    def test_request_sent_to_gateway(self) -> None:
        dag, root = _site()
        seen: list[httpx.Request] = []
        _retrieve(gateway_transport(dag, seen), f"ipfs://{root}/readme.txt")

        assert len(seen) == 1
        assert seen[0].url.path == f"/ipfs/{root}/readme.txt"
        assert seen[0].url.params["format"] == "car"

    def test_plain_base64(self) -> None:
        dag, root = _site()
        result = _retrieve(gateway_transport(dag), f"{root}/readme.txt")
        assert base64.b64decode(result.data) == b"hello from the archive\n" * 20
        assert result.mime_type == "text/plain"

    def test_self_describing(self) -> None:
        dag, root = _site()
        result = _retrieve(gateway_transport(dag), f"/ipfs/{root}/blob", self_describing=True)
        assert result.data.startswith("m")
        assert multibase.decode(result.data) == b"\x00\x01\x02"

    def test_archive_content_type_not_reported(self) -> None:
        dag, root = _site()
        assert _retrieve(gateway_transport(dag), f"{root}/blob").mime_type is None

    def test_unexpected_archive_root_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        dag = DagBuilder()
        leaf = dag.raw(b"leaf bytes")
        root = dag.directory({"leaf.bin": leaf})
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=dag.car([root])))

        with caplog.at_level(logging.WARNING, logger="storegate.retrieve"):
            result = _retrieve(transport, str(leaf))

        assert base64.b64decode(result.data) == b"leaf bytes"
        assert f"rooted at {root}" in caplog.text

    def test_missing_entry(self) -> None:
        dag, root = _site()
        with pytest.raises(StoreGateError) as exc_info:
            _retrieve(gateway_transport(dag), f"{root}/nope.txt")
        assert exc_info.value.kind is ErrorKind.PATH_NOT_FOUND

    def test_invalid_path_makes_no_request(self) -> None:
        dag, _ = _site()
        seen: list[httpx.Request] = []
        with pytest.raises(StoreGateError) as exc_info:
            _retrieve(gateway_transport(dag, seen), "https://example.com/file")
        assert exc_info.value.kind is ErrorKind.INVALID_PATH
        assert seen == []


class TestGatewayFailures:
    def test_non_success_status(self) -> None:
        _, root = _site()
        transport = httpx.MockTransport(lambda request: httpx.Response(404))
        with pytest.raises(StoreGateError) as exc_info:
            _retrieve(transport, f"{root}/readme.txt")
        assert exc_info.value.kind is ErrorKind.GATEWAY_ERROR
        assert exc_info.value.message == "Error fetching file: 404 Not Found"

    def test_transport_error(self) -> None:
        _, root = _site()

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        with pytest.raises(StoreGateError) as exc_info:
            _retrieve(httpx.MockTransport(handler), f"{root}/readme.txt")
        assert exc_info.value.kind is ErrorKind.NETWORK_ERROR

    def test_body_is_not_an_archive(self) -> None:
        _, root = _site()
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b"<html>nope</html>"))
        with pytest.raises(StoreGateError) as exc_info:
            _retrieve(transport, f"{root}/readme.txt")
        assert exc_info.value.kind is ErrorKind.INVALID_ARCHIVE

    def test_truncated_archive_fails_instead_of_short_read(self) -> None:
        dag = DagBuilder()
        payload = b"abcdefghij" * 30
        file_cid = dag.file(payload, chunk_size=100)
        root = dag.directory({"data.bin": file_cid})
        missing = dag.raw(payload[100:200])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=dag.car([root], exclude=(missing,)))

        with pytest.raises(StoreGateError) as exc_info:
            _retrieve(httpx.MockTransport(handler), f"{root}/data.bin")
        assert exc_info.value.kind is ErrorKind.BLOCK_NOT_FOUND
