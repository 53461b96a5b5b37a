# tests/unit/services/test_unit_torch_dimp.py — v1
"""Tests for services/torch_client.py and services/dimp_client.py."""

from __future__ import annotations

import base64
import json

import httpx
import pytest

from aether.config.models import TorchConfig
from aether.core.errors import ClassifiedError, RetryExhaustedError
from aether.core.retry import RetryPolicy
from aether.services.dimp_client import DimpClient
from aether.services.torch_client import (
    TorchClient,
    basic_auth_header,
    build_extraction_request,
    parse_extraction_result,
)

TORCH = TorchConfig(
    base_url="http://torch.local:8080",
    username="user",
    password="secret",
    polling_interval_seconds=5.0,
    max_polling_interval_seconds=30.0,
    extraction_timeout_minutes=1,
)


def _result_body(*urls: str) -> dict:
    return {
        "resourceType": "Parameters",
        "parameter": [
            {"name": "output", "part": [{"name": "type", "valueCode": "Patient"},
                                        {"name": "url", "valueUrl": u}]}
            for u in urls
        ],
    }


class FakeClock:
    """Monotonic clock advanced by the sleeps it hands out."""

    def __init__(self) -> None:
        self.now = 0.0
        self.delays: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.delays.append(delay)
        self.now += delay


def _torch(client, clock: FakeClock | None = None, config: TorchConfig = TORCH) -> TorchClient:
    clock = clock or FakeClock()
    return TorchClient(config, client, RetryPolicy(), sleep=clock.sleep, clock=clock)


class TestProtocolHelpers:
    def test_build_extraction_request(self):
        body = build_extraction_request(b'{"cohortDefinition":{}}')
        assert body["resourceType"] == "Parameters"
        param = body["parameter"][0]
        assert param["name"] == "crtdl"
        assert base64.b64decode(param["valueBase64Binary"]) == b'{"cohortDefinition":{}}'

    def test_parse_extraction_result(self):
        urls = parse_extraction_result(_result_body("http://t/a.ndjson", "http://t/b.ndjson"))
        assert urls == ["http://t/a.ndjson", "http://t/b.ndjson"]

    def test_parse_empty_result(self):
        assert parse_extraction_result({"resourceType": "Parameters"}) == []

    def test_parse_rejects_other_resources(self):
        with pytest.raises(ClassifiedError, match="expected Parameters"):
            parse_extraction_result({"resourceType": "OperationOutcome"})

    def test_basic_auth_header(self):
        assert basic_auth_header("user", "secret") == "Basic dXNlcjpzZWNyZXQ="


class TestNormalizeUrl:
    def test_rebases_absolute_url(self):
        client = _torch(None)
        assert (
            client.normalize_url("http://torch-internal:8080/fhir/__status/42?x=1")
            == "http://torch.local:8080/fhir/__status/42?x=1"
        )

    def test_relative_url(self):
        assert _torch(None).normalize_url("fhir/__status/42") == "http://torch.local:8080/fhir/__status/42"

    def test_download_uses_file_server(self):
        config = TORCH.model_copy(update={"file_server_url": "http://files.local/"})
        client = _torch(None, config=config)
        assert (
            client.normalize_url("http://internal/output/Patient.ndjson", download=True)
            == "http://files.local/output/Patient.ndjson"
        )
        assert client.normalize_url("/fhir/x") == "http://torch.local:8080/fhir/x"

    def test_without_base_url(self):
        client = _torch(None, config=TorchConfig())
        assert client.normalize_url("http://a/b") == "http://a/b"
        assert client.auth is None


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_returns_status_url(self, crtdl_file, make_mock_client):
        seen = {}

        def handler(req: httpx.Request) -> httpx.Response:
            seen["path"] = req.url.path
            seen["auth"] = req.headers.get("Authorization")
            seen["body"] = json.loads(req.content)
            return httpx.Response(
                202, headers={"Content-Location": "http://internal:8080/fhir/__status/job-1"}
            )

        async with make_mock_client(handler) as client:
            status_url = await _torch(client).submit_extraction(crtdl_file)

        assert status_url == "http://torch.local:8080/fhir/__status/job-1"
        assert seen["path"] == "/fhir/$extract-data"
        assert seen["auth"] == "Basic dXNlcjpzZWNyZXQ="
        assert seen["body"]["parameter"][0]["name"] == "crtdl"

    @pytest.mark.asyncio
    async def test_submit_without_location(self, crtdl_file, make_mock_client):
        async with make_mock_client(lambda r: httpx.Response(202)) as client:
            with pytest.raises(ClassifiedError, match="Content-Location"):
                await _torch(client).submit_extraction(crtdl_file)

    @pytest.mark.asyncio
    async def test_submit_requires_base_url(self, crtdl_file, make_mock_client):
        async with make_mock_client(lambda r: httpx.Response(202)) as client:
            with pytest.raises(ClassifiedError) as exc_info:
                await _torch(client, config=TorchConfig()).submit_extraction(crtdl_file)
        assert exc_info.value.category == "configuration"

    @pytest.mark.asyncio
    async def test_submit_rejected(self, crtdl_file, make_mock_client):
        async with make_mock_client(lambda r: httpx.Response(400, text="bad crtdl")) as client:
            with pytest.raises(ClassifiedError) as exc_info:
                await _torch(client).submit_extraction(crtdl_file)
        assert exc_info.value.retryable is False


class TestPoll:
    @pytest.mark.asyncio
    async def test_poll_until_done(self, make_mock_client):
        responses = [
            httpx.Response(202),
            httpx.Response(202),
            httpx.Response(200, json=_result_body("http://internal/output/Patient.ndjson")),
        ]
        clock = FakeClock()
        async with make_mock_client(lambda r: responses.pop(0)) as client:
            urls = await _torch(client, clock).poll_extraction("http://torch.local:8080/fhir/__status/1")
        assert urls == ["http://torch.local:8080/output/Patient.ndjson"]
        assert clock.delays == [5.0, 10.0]

    @pytest.mark.asyncio
    async def test_poll_retries_transient_failure(self, make_mock_client):
        responses = [
            httpx.Response(503),
            httpx.Response(202),
            httpx.Response(200, json=_result_body()),
        ]
        clock = FakeClock()
        async with make_mock_client(lambda r: responses.pop(0)) as client:
            urls = await _torch(client, clock).poll_extraction("http://torch.local:8080/s")
        assert urls == []
        assert clock.delays == [1.0, 5.0]

    @pytest.mark.asyncio
    async def test_poll_unexpected_status(self, make_mock_client):
        async with make_mock_client(lambda r: httpx.Response(404)) as client:
            with pytest.raises(ClassifiedError) as exc_info:
                await _torch(client).poll_extraction("http://torch.local:8080/s")
        assert exc_info.value.http_status == 404
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_poll_timeout(self, make_mock_client):
        calls = []

        def handler(req):
            calls.append(req)
            return httpx.Response(202)

        clock = FakeClock()
        async with make_mock_client(handler) as client:
            with pytest.raises(ClassifiedError, match="did not finish within 1 minutes") as exc_info:
                await _torch(client, clock).poll_extraction("http://torch.local:8080/s")
        assert exc_info.value.retryable is False
        assert clock.delays == [5.0, 10.0, 20.0]
        assert len(calls) == 4

    @pytest.mark.asyncio
    async def test_poll_gives_up_after_retries(self, make_mock_client):
        async with make_mock_client(lambda r: httpx.Response(500)) as client:
            with pytest.raises(RetryExhaustedError) as exc_info:
                await _torch(client).poll_extraction("http://torch.local:8080/s")
        assert exc_info.value.attempts == 5


class TestDownload:
    @pytest.mark.asyncio
    async def test_download_files_retries_each_file(self, tmp_path, make_mock_client):
        attempts: dict[str, int] = {}

        def handler(req: httpx.Request) -> httpx.Response:
            name = req.url.path.rsplit("/", 1)[-1]
            attempts[name] = attempts.get(name, 0) + 1
            assert req.headers["Authorization"].startswith("Basic ")
            if name == "Observation.ndjson" and attempts[name] == 1:
                return httpx.Response(503)
            return httpx.Response(200, content=b'{"resourceType":"X"}\n')

        clock = FakeClock()
        async with make_mock_client(handler) as client:
            results = await _torch(client, clock).download_files(
                ["http://t/out/Patient.ndjson", "http://t/out/Observation.ndjson"], tmp_path
            )

        assert [p.name for p, _ in results] == ["Patient.ndjson", "Observation.ndjson"]
        assert attempts == {"Patient.ndjson": 1, "Observation.ndjson": 2}
        assert clock.delays == [1.0]


class TestDimpClient:
    def test_requires_url(self, make_mock_client):
        with pytest.raises(ClassifiedError) as exc_info:
            DimpClient("", make_mock_client(lambda r: httpx.Response(200)))
        assert exc_info.value.category == "configuration"

    @pytest.mark.asyncio
    async def test_pseudonymize(self, make_mock_client):
        seen = {}

        def handler(req: httpx.Request) -> httpx.Response:
            seen["path"] = req.url.path
            body = json.loads(req.content)
            return httpx.Response(200, json={**body, "id": "pseudo-" + body["id"]})

        async with make_mock_client(handler) as client:
            result = await DimpClient("http://dimp:8080/fhir/", client).pseudonymize(
                {"resourceType": "Patient", "id": "p1"}
            )
        assert seen["path"] == "/fhir/$de-identify"
        assert result == {"resourceType": "Patient", "id": "pseudo-p1"}

    @pytest.mark.asyncio
    async def test_non_json_response(self, make_mock_client):
        async with make_mock_client(lambda r: httpx.Response(200, text="<html>")) as client:
            with pytest.raises(ClassifiedError, match="not JSON"):
                await DimpClient("http://dimp", client).pseudonymize({"id": "1"})

    @pytest.mark.asyncio
    async def test_non_object_response(self, make_mock_client):
        async with make_mock_client(lambda r: httpx.Response(200, json=[1])) as client:
            with pytest.raises(ClassifiedError, match="not a resource"):
                await DimpClient("http://dimp", client).pseudonymize({"id": "1"})

    @pytest.mark.asyncio
    async def test_bad_request(self, make_mock_client):
        async with make_mock_client(lambda r: httpx.Response(422, text="invalid")) as client:
            with pytest.raises(ClassifiedError) as exc_info:
                await DimpClient("http://dimp", client).pseudonymize({"id": "1"})
        assert exc_info.value.http_status == 422
        assert exc_info.value.retryable is False
