import json
from typing import Any, Dict, List, Optional

import httpx

from .config import ContentGenerationConfig
from .errors import OutputValidationError, UpstreamFailure


def _normalize_error_text(detail: str) -> str:
    text = detail or ""
    for _ in range(2):
        try:
            parsed = json.loads(text)
        except Exception:
            break
        if isinstance(parsed, dict):
            found = False
            for key in ("error", "detail", "message"):
                val = parsed.get(key)
                if isinstance(val, dict):
                    val = val.get("message")
                if isinstance(val, str) and val.strip():
                    text = val
                    found = True
                    break
            if not found:
                break
        elif isinstance(parsed, str):
            text = parsed
        else:
            break
    return text


class ContentClient:
    """OpenAI-compatible chat completions client used by the research and curation stages."""

    def __init__(self, config: ContentGenerationConfig):
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=config.timeout_s)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    async def chat_completion(
        self,
        messages: List[Dict[str, Any]],
        temperature: float = 0.3,
        max_tokens: int = 2000,
        response_format: Optional[dict] = None,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model or self.config.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if response_format:
            payload["response_format"] = response_format
        try:
            resp = await self.client.post(f"{self.base_url}/chat/completions", json=payload, headers=self._headers())
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as exc:
            detail = _normalize_error_text(exc.response.text)
            raise UpstreamFailure(
                detail or f"Content service returned {exc.response.status_code}",
                {"statusCode": exc.response.status_code},
            ) from exc
        except httpx.RequestError as exc:
            raise UpstreamFailure(f"Content service request failed: {exc}") from exc
        except ValueError as exc:
            raise UpstreamFailure(f"Content service returned a non-JSON body: {exc}") from exc

    async def generate_json(
        self,
        system: str,
        prompt: str,
        temperature: float = 0.3,
        max_tokens: int = 2000,
    ) -> Dict[str, Any]:
        """Ask for a JSON object and return it parsed."""
        resp = await self.chat_completion(
            [{"role": "system", "content": system}, {"role": "user", "content": prompt}],
            temperature=temperature,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
        )
        choices = resp.get("choices") or []
        content = ""
        if choices and isinstance(choices[0], dict):
            content = (choices[0].get("message") or {}).get("content") or ""
        if not content.strip():
            raise UpstreamFailure("No response from content service")
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            raise OutputValidationError(f"Content service returned invalid JSON: {exc.msg}") from exc
        if not isinstance(parsed, dict):
            raise OutputValidationError("Content service returned JSON that is not an object")
        return parsed

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
