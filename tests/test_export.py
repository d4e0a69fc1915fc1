"""Tests for the Dgraph export client and its outcome classification."""

from __future__ import annotations

import json

import httpx
import pytest

from dgraph_export.config import ExportSettings
from dgraph_export.errors import ConfigInvalid
from dgraph_export.errors import RemoteRejected
from dgraph_export.errors import TransportFailure
from dgraph_export.export import ExportClient
from dgraph_export.export import ExportOutput

ENDPOINT = "http://dgraph-alpha:8080/admin"


def _reply(payload: dict, status_code: int = 200):
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code, json=payload)

    return httpx.MockTransport(handler), requests


def _success(files: list[str]) -> dict:
    return {
        "data": {
            "export": {
                "response": {"message": "Export completed.", "code": "Success"},
                "exportedFiles": files,
            }
        }
    }


class TestExportClient:
    @pytest.mark.asyncio
    async def test_success_returns_files(self):
        transport, requests = _reply(_success(["f1.rdf", "f2.rdf"]))
        client = ExportClient(ENDPOINT, "s3:///bucket/exports", transport=transport)

        output = await client.export()

        assert output.files == ["f1.rdf", "f2.rdf"]
        assert output.response.code == "Success"
        assert len(requests) == 1
        assert str(requests[0].url) == ENDPOINT
        assert requests[0].method == "POST"

    @pytest.mark.asyncio
    async def test_mutation_input(self):
        transport, requests = _reply(_success([]))
        client = ExportClient(
            ENDPOINT,
            "s3:///bucket/exports",
            access_key="AKIA",
            secret_key="secret",
            transport=transport,
        )

        await client.export()

        body = json.loads(requests[0].content)
        assert "export(input: $input)" in body["query"]
        assert body["variables"]["input"] == {
            "format": "rdf",
            "destination": "s3:///bucket/exports",
            "accessKey": "AKIA",
            "secretKey": "secret",
        }

    @pytest.mark.asyncio
    async def test_optional_input_fields(self):
        transport, requests = _reply(_success([]))
        client = ExportClient(
            ENDPOINT,
            "",
            export_format="json",
            anonymous=True,
            namespace=0,
            session_token="token",
            transport=transport,
        )

        await client.export()

        sent = json.loads(requests[0].content)["variables"]["input"]
        assert sent == {
            "format": "json",
            "destination": "",
            "sessionToken": "token",
            "anonymous": True,
            "namespace": 0,
        }

    @pytest.mark.asyncio
    async def test_empty_file_list_is_success(self):
        transport, _ = _reply(_success([]))
        output = await ExportClient(ENDPOINT, "", transport=transport).export()
        assert output.files == []

    @pytest.mark.asyncio
    async def test_non_success_code_is_rejected(self):
        payload = {
            "data": {
                "export": {
                    "response": {"message": "export already in progress", "code": "Error"},
                    "exportedFiles": None,
                }
            }
        }
        transport, _ = _reply(payload)

        with pytest.raises(RemoteRejected) as exc_info:
            await ExportClient(ENDPOINT, "", transport=transport).export()

        assert exc_info.value.code == "Error"
        assert exc_info.value.message == "export already in progress"
        assert '"Error"' in str(exc_info.value)
        assert "export already in progress" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_graphql_errors_are_rejected(self):
        payload = {"errors": [{"message": "export failed: no space left on device"}], "data": None}
        transport, _ = _reply(payload)

        with pytest.raises(RemoteRejected) as exc_info:
            await ExportClient(ENDPOINT, "", transport=transport).export()

        assert exc_info.value.code == "Error"
        assert "no space left" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_http_error_status_is_transport_failure(self):
        transport, _ = _reply({"error": "bad gateway"}, status_code=502)

        with pytest.raises(TransportFailure, match="HTTP 502"):
            await ExportClient(ENDPOINT, "", transport=transport).export()

    @pytest.mark.asyncio
    async def test_connection_error_is_transport_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = ExportClient(ENDPOINT, "", transport=httpx.MockTransport(handler))

        with pytest.raises(TransportFailure, match="connection refused"):
            await client.export()

    @pytest.mark.asyncio
    async def test_timeout_is_transport_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = ExportClient(ENDPOINT, "", timeout=1.5, transport=httpx.MockTransport(handler))

        with pytest.raises(TransportFailure, match="timed out after 1.5s"):
            await client.export()

    @pytest.mark.asyncio
    async def test_unreadable_body_is_transport_failure(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>oops</html>"))

        with pytest.raises(TransportFailure, match="unreadable"):
            await ExportClient(ENDPOINT, "", transport=transport).export()

    @pytest.mark.asyncio
    async def test_missing_data_is_transport_failure(self):
        transport, _ = _reply({"data": {}})

        with pytest.raises(TransportFailure, match="missing data"):
            await ExportClient(ENDPOINT, "", transport=transport).export()

    @pytest.mark.parametrize("endpoint", ["localhost:8080/admin", "not a url", "ftp://host/admin", ""])
    def test_malformed_endpoint_is_config_invalid(self, endpoint):
        with pytest.raises(ConfigInvalid):
            ExportClient(endpoint, "")

    def test_malformed_destination_is_config_invalid(self):
        with pytest.raises(ConfigInvalid):
            ExportClient(ENDPOINT, "s3:///bucket/with space")

    def test_from_settings(self):
        settings = ExportSettings(
            endpoint_url=ENDPOINT,
            export_dest="minio://minio:9000/exports",
            access_key="key",
            secret_key="secret",
            export_timeout_seconds=42,
            lease_identity="replica-a",
        )

        client = ExportClient.from_settings(settings)

        assert client.endpoint == ENDPOINT
        assert client.dest == "minio://minio:9000/exports"
        assert client.timeout == 42


class TestExportOutput:
    def test_wire_shape(self):
        output = ExportOutput.model_validate(_success(["f1.rdf"])["data"]["export"])

        assert output.to_wire() == {
            "Response": {"Message": "Export completed.", "Code": "Success"},
            "ExportedFiles": ["f1.rdf"],
        }
