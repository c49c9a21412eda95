"""
HTTP Submission Gateway — collaborators backed by an internal REST service.

The gateway service owns linked destination accounts, posting-rule checks
and media storage. Endpoints are configured in settings.yaml (gateway.*);
path parameters are written as {owner_id}, {account_id}, {media_key}.

Reads (account lookup, eligibility, media) retry with backoff. Submissions
are sent once: a retried POST could publish the same post twice, so a
failed submit is left to the queue's own retry policy.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from config.settings import GatewayConfig, get_settings
from models.schemas import (
    EligibilityResult, MediaAsset, SubmissionRequest, SubmissionResult,
)
from workers.collaborators import MediaResolver, SubmissionClient, SubmissionClientProvider

logger = structlog.get_logger()


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


class GatewaySubmissionClient(SubmissionClient):

    def __init__(self, gateway: "HttpSubmissionGateway", account_id: str):
        self.gateway = gateway
        self.account_id = account_id

    async def submit(self, request: SubmissionRequest) -> SubmissionResult:
        response = await self.gateway._send(
            "POST", "submit",
            path_params={"account_id": self.account_id},
            json=request.model_dump(mode="json"),
        )
        if response.status_code >= 500:
            response.raise_for_status()
        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = {}
            return SubmissionResult(success=False, error=body.get("error") or f"HTTP {response.status_code}")
        return SubmissionResult.model_validate(response.json())


class HttpSubmissionGateway(SubmissionClientProvider, MediaResolver):

    def __init__(self, config: GatewayConfig = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or get_settings().gateway
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.bearer_token:
                headers["Authorization"] = f"Bearer {self.config.bearer_token}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_seconds,
                transport=self._transport,
            )
        return self.client

    def _url(self, endpoint: str, path_params: dict[str, Any]) -> str:
        url = self.config.endpoints.get(endpoint, endpoint)
        for k, v in path_params.items():
            url = url.replace(f"{{{k}}}", str(v))
        return url

    async def _send(self, method: str, endpoint: str, path_params: dict[str, Any] = None, **kwargs) -> httpx.Response:
        client = await self._get_client()
        return await client.request(method, self._url(endpoint, path_params or {}), **kwargs)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception(_is_transient),
        reraise=True,
    )
    async def _get(self, endpoint: str, path_params: dict[str, Any], params: dict[str, Any] = None) -> Optional[dict[str, Any]]:
        """GET returning the JSON body, or None on 404."""
        response = await self._send("GET", endpoint, path_params, params=params or {})
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    async def resolve_for_owner(self, owner_id: int) -> Optional[SubmissionClient]:
        body = await self._get("resolve_account", {"owner_id": owner_id})
        if not body or not body.get("active", True) or not body.get("account_id"):
            logger.info("gateway_no_active_account", owner_id=owner_id)
            return None
        return GatewaySubmissionClient(self, str(body["account_id"]))

    async def check_eligibility(self, owner_id: int, destination: str) -> EligibilityResult:
        body = await self._get("eligibility", {"owner_id": owner_id}, params={"destination": destination})
        if body is None:
            return EligibilityResult(ok=False, reason="owner not found")
        return EligibilityResult(ok=bool(body.get("ok")), reason=body.get("reason", ""))

    async def resolve(self, media_key: str, owner_id: int) -> Optional[MediaAsset]:
        body = await self._get("media", {"owner_id": owner_id, "media_key": media_key})
        if not body:
            return None
        url = body.get("download_url") or body.get("signed_url") or body.get("url")
        return MediaAsset(url=url) if url else None

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
            self.client = None
