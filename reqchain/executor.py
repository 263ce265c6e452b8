"""reqchain executor - HTTP request execution."""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import requests

from reqchain.plugins import PluginRegistry, maybe_await

logger = logging.getLogger(__name__)


class TransportError(RuntimeError):
    """The request never produced an HTTP response (network, timeout, ...)."""


@dataclass
class HttpRequest:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method,
            "url": self.url,
            "headers": dict(self.headers),
            "body": self.body,
        }


@dataclass
class HttpResponse:
    status: int
    status_text: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""
    elapsed_ms: float = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "statusText": self.status_text,
            "headers": dict(self.headers),
            "body": self.body,
        }


class RequestResult:
    """Result of an HTTP request."""

    def __init__(self):
        self.status_code: int = 0
        self.status_text: str = ""
        self.headers: dict[str, str] = {}
        self.elapsed_ms: float = 0
        self.error: str | None = None
        self.raw_text: str = ""


def encode_body(body: Any, headers: dict[str, str]) -> tuple[bytes | None, dict[str, str]]:
    """Serialize a request body. Dicts and lists go out as JSON."""
    if body is None or body == "":
        return None, headers
    if isinstance(body, dict | list):
        if not any(k.lower() == "content-type" for k in headers):
            headers = {**headers, "Content-Type": "application/json"}
        return json.dumps(body).encode("utf-8"), headers
    if isinstance(body, bytes):
        return body, headers
    return str(body).encode("utf-8"), headers


def execute_request(
    method: str,
    url: str,
    headers: dict[str, str] | None = None,
    body: Any = None,
    timeout: int = 30,
) -> RequestResult:
    """Execute an HTTP request and return structured result.

    Never raises - always returns RequestResult with error field set.
    HTTP error statuses are not errors here.
    """
    result = RequestResult()

    try:
        data, req_headers = encode_body(body, dict(headers or {}))
        start = time.monotonic()
        resp = requests.request(
            method=method.upper(),
            url=url,
            headers=req_headers,
            data=data,
            timeout=timeout,
            allow_redirects=True,
        )
        result.elapsed_ms = (time.monotonic() - start) * 1000

        result.status_code = resp.status_code
        result.status_text = resp.reason or ""
        result.headers = dict(resp.headers)
        result.raw_text = resp.text

    except requests.exceptions.Timeout:
        result.error = f"Request timed out after {timeout}s"
    except requests.exceptions.ConnectionError as e:
        result.error = f"Connection error: {e}"
    except requests.exceptions.RequestException as e:
        result.error = f"Request failed: {e}"
    except Exception as e:
        result.error = f"Unexpected error: {e}"

    return result


class HttpClient:
    """Async HTTP collaborator for the chain executor.

    Runs pre-request hooks, sends the request on a worker thread, then
    runs post-response hooks. Raises TransportError only when no response
    was received.
    """

    def __init__(self, plugins: PluginRegistry | None = None, timeout: int = 30):
        self.plugins = plugins
        self.timeout = timeout

    async def execute(self, request: HttpRequest) -> HttpResponse:
        hooks = self.plugins
        if hooks:
            for hook in hooks.pre_request_hooks:
                request = await maybe_await(hook(request)) or request

        result = await asyncio.to_thread(
            execute_request,
            request.method,
            request.url,
            request.headers,
            request.body,
            self.timeout,
        )
        if result.error:
            raise TransportError(result.error)
        logger.debug("%s %s -> %d (%.0fms)", request.method, request.url, result.status_code, result.elapsed_ms)

        response = HttpResponse(
            status=result.status_code,
            status_text=result.status_text,
            headers=result.headers,
            body=result.raw_text,
            elapsed_ms=result.elapsed_ms,
        )
        if hooks:
            for hook in hooks.post_response_hooks:
                response = await maybe_await(hook(request, response)) or response
        return response
