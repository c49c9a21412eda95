"""Tests for the HTTP submission gateway against a mocked transport."""
import json

import httpx
import pytest

from config.settings import GatewayConfig
from models.schemas import SubmissionRequest
from workers.gateway import GatewaySubmissionClient, HttpSubmissionGateway


def _gateway(handler, **config) -> HttpSubmissionGateway:
    cfg = GatewayConfig(base_url="https://gw.example.com", api_key="secret", **config)
    return HttpSubmissionGateway(cfg, transport=httpx.MockTransport(handler))


class TestAccountResolution:

    @pytest.mark.asyncio
    async def test_active_account(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"account_id": "acc-1", "active": True})

        gateway = _gateway(handler)
        client = await gateway.resolve_for_owner(42)
        await gateway.close()

        assert isinstance(client, GatewaySubmissionClient)
        assert client.account_id == "acc-1"
        assert seen[0].url.path == "/owners/42/account"
        assert seen[0].headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_unresolved_api_key_is_not_sent(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"account_id": "acc-1"})

        cfg = GatewayConfig(base_url="https://gw.example.com", api_key="${POSTQUEUE_GATEWAY_API_KEY}")
        gateway = HttpSubmissionGateway(cfg, transport=httpx.MockTransport(handler))
        await gateway.resolve_for_owner(42)
        await gateway.close()

        assert "Authorization" not in seen[0].headers

    @pytest.mark.parametrize("response", [
        httpx.Response(404),
        httpx.Response(200, json={"account_id": "acc-1", "active": False}),
        httpx.Response(200, json={"active": True}),
    ])
    @pytest.mark.asyncio
    async def test_no_active_account(self, response):
        gateway = _gateway(lambda request: response)
        assert await gateway.resolve_for_owner(42) is None
        await gateway.close()

    @pytest.mark.asyncio
    async def test_client_error_is_raised(self):
        gateway = _gateway(lambda request: httpx.Response(401))
        with pytest.raises(httpx.HTTPStatusError):
            await gateway.resolve_for_owner(42)
        await gateway.close()


class TestEligibility:

    @pytest.mark.asyncio
    async def test_passes_destination(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": False, "reason": "karma too low"})

        gateway = _gateway(handler)
        result = await gateway.check_eligibility(42, "pics")
        await gateway.close()

        assert result.ok is False
        assert result.reason == "karma too low"
        assert seen[0].url.path == "/owners/42/eligibility"
        assert seen[0].url.params["destination"] == "pics"

    @pytest.mark.asyncio
    async def test_unknown_owner(self):
        gateway = _gateway(lambda request: httpx.Response(404))
        result = await gateway.check_eligibility(42, "pics")
        assert result.ok is False
        assert result.reason == "owner not found"


class TestMedia:

    @pytest.mark.asyncio
    async def test_prefers_download_url(self):
        gateway = _gateway(lambda request: httpx.Response(200, json={
            "download_url": "https://cdn/a.jpg", "url": "https://origin/a.jpg",
        }))
        asset = await gateway.resolve("a", 42)
        assert asset.url == "https://cdn/a.jpg"

    @pytest.mark.asyncio
    async def test_missing_media(self):
        gateway = _gateway(lambda request: httpx.Response(404))
        assert await gateway.resolve("a", 42) is None

    @pytest.mark.asyncio
    async def test_body_without_url(self):
        gateway = _gateway(lambda request: httpx.Response(200, json={"size": 10}))
        assert await gateway.resolve("a", 42) is None


class TestSubmit:

    @pytest.mark.asyncio
    async def test_successful_submit(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={
                "success": True, "external_id": "t3_x", "url": "https://example.com/p/x",
            })

        gateway = _gateway(handler)
        client = GatewaySubmissionClient(gateway, "acc-1")
        result = await client.submit(SubmissionRequest(destination="pics", title="Hi"))
        await gateway.close()

        assert result.success is True
        assert result.external_id == "t3_x"
        assert seen[0].method == "POST"
        assert seen[0].url.path == "/accounts/acc-1/submissions"
        assert json.loads(seen[0].content)["title"] == "Hi"

    @pytest.mark.asyncio
    async def test_rejected_submit_returns_failure(self):
        gateway = _gateway(lambda request: httpx.Response(422, json={"error": "TITLE_TOO_LONG"}))
        result = await GatewaySubmissionClient(gateway, "acc-1").submit(
            SubmissionRequest(destination="pics", title="Hi"),
        )
        assert result.success is False
        assert result.error == "TITLE_TOO_LONG"

    @pytest.mark.asyncio
    async def test_rejected_submit_without_json(self):
        gateway = _gateway(lambda request: httpx.Response(400, text="bad request"))
        result = await GatewaySubmissionClient(gateway, "acc-1").submit(
            SubmissionRequest(destination="pics", title="Hi"),
        )
        assert result.error == "HTTP 400"

    @pytest.mark.asyncio
    async def test_server_error_is_sent_once(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503)

        gateway = _gateway(handler)
        with pytest.raises(httpx.HTTPStatusError):
            await GatewaySubmissionClient(gateway, "acc-1").submit(
                SubmissionRequest(destination="pics", title="Hi"),
            )
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_custom_endpoint_template(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"success": True})

        endpoints = {**GatewayConfig().endpoints, "submit": "/v2/{account_id}/posts"}
        gateway = _gateway(handler, endpoints=endpoints)
        await GatewaySubmissionClient(gateway, "acc-9").submit(
            SubmissionRequest(destination="pics", title="Hi"),
        )
        assert seen[0].url.path == "/v2/acc-9/posts"
