"""reqchain optional - drop header/param keys whose optional values are all absent."""

import logging
from typing import Any

from reqchain.resolver import OptionalResolution, VariableContext, VariableResolver, stringify_value

logger = logging.getLogger(__name__)


def should_include(resolution: OptionalResolution) -> bool:
    """Decide whether a resolved header/param value is kept.

    A value is dropped only when it has optional references, none of them
    had a value, it has no required references, and nothing but
    whitespace is left of its literal text.
    """
    refs = resolution.optional_references
    if not refs:
        return True
    if any(refs.values()):
        return True
    if resolution.has_required:
        return True
    return bool(resolution.literal.strip())


async def resolve_optional_map(
    mapping: dict[str, Any] | None,
    resolver: VariableResolver,
    context: VariableContext,
) -> dict[str, str]:
    """Resolve each value in a header/param map, applying the optional policy."""
    result: dict[str, str] = {}
    for key, value in (mapping or {}).items():
        if not isinstance(value, str):
            result[key] = stringify_value(await resolver.resolve_value(value, context))
            continue
        resolution = await resolver.resolve_with_optional_info(value, context)
        if should_include(resolution):
            result[key] = resolution.resolved
        else:
            logger.debug("Dropping '%s': optional values are undefined", key)
    return result
