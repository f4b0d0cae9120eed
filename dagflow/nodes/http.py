"""
HTTP node executor.

Issues one HTTP request built from the node's resolved configuration
and maps the response into the node output:

    {"status": 200, "headers": {...}, "body": <json or text>, "latency_ms": 12.3}

Config keys:
    url             Required target URL
    method          HTTP method (default GET)
    headers         Request headers (values are stringified)
    params          Query parameters
    body            str is sent as-is, dict/list are sent as JSON
    expected_status Accepted status codes; without it any status >= 400 fails
"""

from typing import Any, Dict, List, Optional
import logging
import time

import httpx

from dagflow.config import settings
from dagflow.errors import NodeConfigurationError, NodeExecutionError
from dagflow.nodes.registry import NodeContext, register_executor


logger = logging.getLogger(__name__)

ALLOWED_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"}


@register_executor("http")
class HttpExecutor:
    """
    Executor for `http` nodes.

    A shared httpx.AsyncClient can be injected (connection pooling, tests
    with ASGITransport); otherwise a short-lived client is opened per call.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self._client = client
        self.timeout = timeout if timeout is not None else settings.HTTP_TIMEOUT

    def validate(self, config: Dict[str, Any]) -> None:
        url = config.get("url")
        if not isinstance(url, str) or not url:
            raise NodeConfigurationError("HTTP node requires a non-empty 'url'", {"url": url})

        method = str(config.get("method", "GET")).upper()
        if method not in ALLOWED_METHODS:
            raise NodeConfigurationError(
                f"Unsupported HTTP method '{method}'",
                {"method": method, "allowed": sorted(ALLOWED_METHODS)},
            )

        for key in ("headers", "params"):
            if config.get(key) is not None and not isinstance(config[key], dict):
                raise NodeConfigurationError(f"HTTP node '{key}' must be a mapping")

        expected = config.get("expected_status")
        if expected is not None and (
            not isinstance(expected, list) or not all(isinstance(s, int) for s in expected)
        ):
            raise NodeConfigurationError("'expected_status' must be a list of integers")

    async def execute(self, ctx: NodeContext, config: Dict[str, Any]) -> Dict[str, Any]:
        method = str(config.get("method", "GET")).upper()
        url = config["url"]
        request_kwargs = self._build_request(config)

        logger.debug(f"[{ctx.execution_id}] {ctx.node_id}: {method} {url} (attempt {ctx.attempt})")

        start = time.perf_counter()
        try:
            response = await self._send(method, url, **request_kwargs)
        except httpx.HTTPError as e:
            raise NodeExecutionError(
                f"HTTP request failed: {e.__class__.__name__}: {e}",
                {"method": method, "url": url},
                retryable=True,
            ) from e
        latency_ms = (time.perf_counter() - start) * 1000

        output = {
            "status": response.status_code,
            "headers": dict(response.headers),
            "body": self._parse_body(response),
            "latency_ms": round(latency_ms, 2),
        }

        if self._is_failure(response.status_code, config.get("expected_status")):
            raise NodeExecutionError(
                f"HTTP {method} {url} returned status {response.status_code}",
                {"status": response.status_code, "body": output["body"]},
                retryable=response.status_code >= 500,
            )

        return output

    def _build_request(self, config: Dict[str, Any]) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {}

        headers = config.get("headers") or {}
        if headers:
            kwargs["headers"] = {str(k): str(v) for k, v in headers.items()}

        params = config.get("params") or {}
        if params:
            kwargs["params"] = params

        body = config.get("body")
        if isinstance(body, (dict, list)):
            kwargs["json"] = body
        elif isinstance(body, (str, bytes)):
            kwargs["content"] = body
        elif body is not None:
            kwargs["content"] = str(body)

        return kwargs

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(method, url, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(method, url, **kwargs)

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    @staticmethod
    def _is_failure(status: int, expected: Optional[List[int]]) -> bool:
        if expected:
            return status not in expected
        return status >= 400
