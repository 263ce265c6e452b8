"""reqchain assembler - turn API/endpoint definitions into a concrete request."""

import logging
import re
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from reqchain.executor import HttpRequest
from reqchain.optional import resolve_optional_map
from reqchain.resolver import VariableContext, VariableResolver, stringify_value

logger = logging.getLogger(__name__)


def build_url(api: dict, endpoint: dict) -> str:
    """Join base URL and endpoint path. Templates must already be resolved."""
    base_url = (api.get("baseUrl") or "").rstrip("/")
    path = endpoint.get("path") or ""
    if not path.startswith("/"):
        path = "/" + path
    return base_url + path


def _merged(api_values: dict | None, endpoint_values: dict | None) -> dict[str, Any]:
    merged = dict(api_values or {})
    merged.update(endpoint_values or {})
    return merged


def merge_headers(api: dict, endpoint: dict) -> dict[str, str]:
    """Raw merge; endpoint headers win on key collision."""
    return {k: stringify_value(v) for k, v in _merged(api.get("headers"), endpoint.get("headers")).items()}


def merge_params(api: dict, endpoint: dict) -> dict[str, str]:
    """Raw merge; endpoint params win on key collision."""
    return {k: stringify_value(v) for k, v in _merged(api.get("params"), endpoint.get("params")).items()}


async def merge_headers_with_optional(
    api: dict,
    endpoint: dict,
    resolver: VariableResolver,
    context: VariableContext,
) -> dict[str, str]:
    merged = _merged(api.get("headers"), endpoint.get("headers"))
    return await resolve_optional_map(merged, resolver, context)


async def merge_params_with_optional(
    api: dict,
    endpoint: dict,
    resolver: VariableResolver,
    context: VariableContext,
) -> dict[str, str]:
    merged = _merged(api.get("params"), endpoint.get("params"))
    return await resolve_optional_map(merged, resolver, context)


def apply_path_params(url: str, path_params: dict[str, Any] | None) -> str:
    """Substitute literal ``{{name}}`` occurrences left in an already-built URL."""
    for name, value in (path_params or {}).items():
        pattern = re.escape("{{" + name + "}}")
        url = re.sub(pattern, lambda _m, v=stringify_value(value): v, url)
    return url


def append_query_params(url: str, params: dict[str, Any] | None) -> str:
    """Append params to the URL query, replacing existing keys of the same name."""
    if not params:
        return url
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in params]
    query.extend((k, stringify_value(v)) for k, v in params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


async def _apply_overrides(merged, values, resolver, context):
    """Overlay step values; a key whose override is omitted is dropped entirely."""
    resolved = await resolve_optional_map(values, resolver, context)
    for key in values or {}:
        merged.pop(key, None)
    merged.update(resolved)


async def assemble_request(
    api: dict,
    endpoint: dict,
    resolver: VariableResolver,
    context: VariableContext,
    overrides: dict | None = None,
) -> HttpRequest:
    """Resolve and merge API + endpoint (+ per-step ``with`` overrides).

    ``pathParams`` are resolved first and exposed as step-scope variables,
    so ``/posts/{{postId}}`` resolves through normal lookup.
    """
    overrides = overrides or {}

    path_params = await resolver.resolve_value(overrides.get("pathParams") or {}, context)
    if path_params:
        context = context.replace(step={**context.step, **path_params})

    base_url = await resolver.resolve(api.get("baseUrl") or "", context)
    path = await resolver.resolve(endpoint.get("path") or "", context)
    method = await resolver.resolve(endpoint.get("method") or "GET", context)

    headers = await merge_headers_with_optional(api, endpoint, resolver, context)
    await _apply_overrides(headers, overrides.get("headers"), resolver, context)

    params = await merge_params_with_optional(api, endpoint, resolver, context)
    await _apply_overrides(params, overrides.get("params"), resolver, context)

    if "body" in overrides:
        body = await resolver.resolve_value(overrides["body"], context)
    else:
        body = await resolver.resolve_value(endpoint.get("body"), context)

    url = build_url({"baseUrl": base_url}, {"path": path})
    url = apply_path_params(url, path_params)
    url = append_query_params(url, params)

    return HttpRequest(method=method.upper(), url=url, headers=headers, body=body)
