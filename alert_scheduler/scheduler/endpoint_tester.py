"""
Smoke test for the web app's cron HTTP endpoints.
"""

from dataclasses import dataclass

import httpx

from alert_scheduler.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

CRON_ENDPOINTS = (
    "/api/cron/send-email-alerts",
    "/api/cron/send-weekly-digests",
    "/api/cron/cleanup-expired-tokens",
    "/api/cron/update-job-rankings",
)


@dataclass(slots=True)
class EndpointResult:
    path: str
    ok: bool
    status_code: int | None = None
    message: str | None = None
    error: str | None = None


class CronEndpointTester:
    def __init__(
        self,
        base_url: str,
        secret: str,
        timeout_ms: int = 10000,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.secret = secret
        self.timeout = timeout_ms / 1000
        self._transport = transport

    async def test_all(self) -> list[EndpointResult]:
        results = []
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Authorization": f"Bearer {self.secret}"},
            transport=self._transport,
        ) as client:
            for path in CRON_ENDPOINTS:
                results.append(await self._test_endpoint(client, path))
        return results

    async def _test_endpoint(self, client: httpx.AsyncClient, path: str) -> EndpointResult:
        try:
            response = await client.get(path)
        except httpx.TimeoutException:
            logger.warning("Cron endpoint timed out", path=path, timeout_s=self.timeout)
            return EndpointResult(path, ok=False, error=f"Timed out after {self.timeout:g}s")
        except httpx.HTTPError as e:
            logger.warning("Cron endpoint request failed", path=path, error=str(e))
            return EndpointResult(path, ok=False, error=str(e))

        if response.is_success:
            try:
                message = response.json().get("message")
            except (ValueError, AttributeError):
                message = None
            return EndpointResult(path, ok=True, status_code=response.status_code, message=message)

        logger.warning("Cron endpoint returned error", path=path, status_code=response.status_code)
        return EndpointResult(
            path,
            ok=False,
            status_code=response.status_code,
            error=f"HTTP {response.status_code}: {response.text[:200]}",
        )
