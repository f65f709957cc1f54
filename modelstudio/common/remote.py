"""
HTTP client for a peer Model Studio instance, used by the remote trainer
and predictor backends.
"""

import json
import logging
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from modelstudio.common.exceptions import (
    BackendError,
    NotFoundError,
    NotTrainedError,
    ParseError,
    ValidationError,
)
from modelstudio.config import settings

logger = logging.getLogger(__name__)

_MAX_CAPTURE = 4000


class RemoteClient:
    """Thin wrapper over one httpx.AsyncClient; transport errors are retried."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None, api_key: str = ""):
        self.base_url = (base_url or settings.REMOTE_TRAINER_URL).rstrip("/")
        self._api_key = api_key or settings.INTERNAL_API_KEY
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else settings.REMOTE_TIMEOUT_SEC,
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception_type((httpx.TransportError, httpx.TimeoutException)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _post_with_retry(self, path: str, body: Dict[str, Any]) -> httpx.Response:
        headers = {"X-Internal-Key": self._api_key} if self._api_key else {}
        return await self._client.post(path, json=body, headers=headers)

    async def post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._post_with_retry(path, body)
        except (httpx.TransportError, httpx.TimeoutException) as e:
            logger.error(f"Remote Model Studio unreachable at {self.base_url}{path}: {e}")
            raise BackendError(f"Remote service unreachable: {e}") from e
        return parse_remote_response(response)

    async def close(self) -> None:
        await self._client.aclose()


_REMOTE_KINDS = {
    ValidationError.kind: ValidationError,
    NotFoundError.kind: NotFoundError,
}


def parse_remote_response(response: httpx.Response) -> Dict[str, Any]:
    """Decode a `{success, ..., error?, kind?}` body into a dict or a typed error."""
    try:
        payload = response.json()
    except json.JSONDecodeError as e:
        raise ParseError(f"Remote response is not valid JSON: {e}", raw_output=response.text[:_MAX_CAPTURE]) from e
    if not isinstance(payload, dict):
        raise ParseError("Remote response is not a JSON object", raw_output=response.text[:_MAX_CAPTURE])

    if response.status_code != 200 or not payload.get("success", False):
        message = str(payload.get("error") or f"HTTP {response.status_code}")
        kind = payload.get("kind")
        if kind == NotTrainedError.kind:
            raise BackendError(f"Remote model is not trained: {message}")
        error_cls = _REMOTE_KINDS.get(kind)
        if error_cls is not None:
            raise error_cls(f"Remote: {message}")
        raise BackendError(f"Remote call failed: {message}")
    return payload
