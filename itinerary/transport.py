import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from .auth import INTERNAL_TOKEN_HEADER
from .errors import HandoffFailure


logger = logging.getLogger("uvicorn.error")

IDEMPOTENCY_HEADER = "Idempotency-Key"
# Statuses where the target handler most likely never ran.
RETRYABLE_STATUSES = {502, 503, 504}


class StageTransport:
    """Authenticated POST to {base_url}/agents/{agent} carrying {"requestId": ...}.

    Only connection failures and gateway statuses are retried; a read timeout or
    a stage's own error response is returned to the caller as HandoffFailure.
    """

    def __init__(
        self,
        base_url: str,
        internal_api_key: str,
        *,
        retries: int = 1,
        timeout_s: float = 30.0,
        retry_backoff_s: float = 0.2,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.internal_api_key = internal_api_key
        self.retries = max(0, retries)
        self.retry_backoff_s = retry_backoff_s
        self.client = client or httpx.AsyncClient(timeout=timeout_s)

    def endpoint(self, agent: str) -> str:
        return f"{self.base_url}/agents/{agent}"

    async def trigger(self, agent: str, request_id: str, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        headers = {
            "Content-Type": "application/json",
            INTERNAL_TOKEN_HEADER: self.internal_api_key,
        }
        if idempotency_key:
            headers[IDEMPOTENCY_HEADER] = idempotency_key
        url = self.endpoint(agent)
        attempts = self.retries + 1
        last_error = ""
        for attempt in range(1, attempts + 1):
            try:
                resp = await self.client.post(url, json={"requestId": request_id}, headers=headers)
            except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as exc:
                last_error = f"{agent} agent unreachable: {exc}"
                logger.warning("Handoff to %s for %s failed (attempt %s/%s): %s", agent, request_id, attempt, attempts, exc)
            except httpx.RequestError as exc:
                raise HandoffFailure(
                    f"{agent} agent call failed: {exc}",
                    {"agent": agent, "requestId": request_id},
                ) from exc
            else:
                if resp.is_success:
                    logger.info("%s agent triggered for %s", agent, request_id)
                    try:
                        return resp.json()
                    except ValueError:
                        return {}
                detail = _response_detail(resp)
                if resp.status_code not in RETRYABLE_STATUSES:
                    raise HandoffFailure(
                        f"{agent} agent call failed: {resp.status_code}",
                        {"agent": agent, "requestId": request_id, "statusCode": resp.status_code, "response": detail},
                    )
                last_error = f"{agent} agent call failed: {resp.status_code}"
                logger.warning(
                    "Handoff to %s for %s got %s (attempt %s/%s)", agent, request_id, resp.status_code, attempt, attempts
                )
            if attempt < attempts:
                await asyncio.sleep(self.retry_backoff_s * attempt)
        raise HandoffFailure(last_error, {"agent": agent, "requestId": request_id, "attempts": attempts})

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


def _response_detail(resp: httpx.Response) -> Any:
    try:
        payload = resp.json()
    except ValueError:
        return resp.text
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        return payload["error"]
    return payload
