"""reqchain resolver - variable context and {{...}} template resolution."""

from __future__ import annotations

import dataclasses
import datetime
import json
import logging
import os
import random
import re
import time as _time
import uuid
from dataclasses import dataclass, field
from typing import Any

from reqchain.paths import find_value, parse_structured_body
from reqchain.plugins import PluginRegistry, maybe_await
from reqchain.template import (
    Call,
    Literal,
    NumberArg,
    Placeholder,
    StringArg,
    TemplateSyntaxError,
    parse_call,
    parse_template,
)

logger = logging.getLogger(__name__)

MAX_RESOLUTION_DEPTH = 10
SECRET_MASK = "[SECRET]"

_RANDOM_INT_RE = re.compile(r"^\$randomInt\s*\(\s*(-?\d+)\s*,\s*(-?\d+)\s*\)$")
_MISSING = object()


class VariableResolutionError(Exception):
    """A template reference could not be turned into a value."""

    def __init__(self, message: str, variable_name: str = ""):
        super().__init__(message)
        self.variable_name = variable_name


class UndefinedVariableError(VariableResolutionError):
    """The reference names nothing in its scope. Optional references swallow this."""


@dataclass
class VariableContext:
    """Named variable scopes for one request or one chain run.

    ``steps`` maps step id to ``{"request": ..., "response": ...}`` and is
    the only part that grows during a chain run. ``secret_values`` collects
    every resolved secret so output can be masked.
    """

    cli: dict[str, Any] = field(default_factory=dict)
    step: dict[str, Any] = field(default_factory=dict)
    chain_vars: dict[str, Any] = field(default_factory=dict)
    endpoint: dict[str, Any] = field(default_factory=dict)
    api: dict[str, Any] = field(default_factory=dict)
    profile: dict[str, Any] = field(default_factory=dict)
    global_vars: dict[str, Any] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=lambda: dict(os.environ))
    steps: dict[str, dict[str, Any]] = field(default_factory=dict)
    plugins: PluginRegistry | None = None
    secret_values: set[str] = field(default_factory=set)

    def scopes(self) -> list[tuple[str, dict[str, Any]]]:
        """Unqualified lookup order, highest precedence first."""
        return [
            ("cli", self.cli),
            ("step", self.step),
            ("chain", self.chain_vars),
            ("endpoint", self.endpoint),
            ("api", self.api),
            ("profile", self.profile),
            ("global", self.global_vars),
            ("env", self.env),
        ]

    def replace(self, **changes: Any) -> VariableContext:
        """Copy with some scopes swapped. ``secret_values`` stays shared."""
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class OptionalResolution:
    """Outcome of resolving a template while tracking optional references.

    ``optional_references`` maps each optional reference to whether it
    had a value. ``literal`` is the template's literal text with every
    placeholder removed.
    """

    resolved: str
    optional_references: dict[str, bool]
    literal: str
    has_required: bool


def stringify_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, dict | list):
        return json.dumps(value)
    return str(value)


def mask_secrets(text: str, context: VariableContext) -> str:
    """Replace every secret value resolved so far with ``[SECRET]``."""
    if not isinstance(text, str):
        return text
    for secret in sorted(context.secret_values, key=len, reverse=True):
        if secret:
            text = text.replace(secret, SECRET_MASK)
    return text


class VariableResolver:
    """Resolves ``{{...}}`` references against a VariableContext.

    Stateless; every call takes the context explicitly. Placeholders are
    evaluated left to right and awaited one at a time.
    """

    async def resolve(self, template: str, context: VariableContext) -> str:
        return await self._render(template, context, 0, None)

    async def resolve_value(self, value: Any, context: VariableContext) -> Any:
        """Resolve every string leaf of a nested dict/list structure."""
        if isinstance(value, str):
            return await self.resolve(value, context)
        if isinstance(value, dict):
            resolved = {}
            for k, v in value.items():
                resolved[k] = await self.resolve_value(v, context)
            return resolved
        if isinstance(value, list):
            return [await self.resolve_value(item, context) for item in value]
        return value

    async def resolve_with_optional_info(
        self,
        template: str,
        context: VariableContext,
    ) -> OptionalResolution:
        optional: dict[str, bool] = {}
        resolved = await self._render(template, context, 0, optional)
        nodes = parse_template(template)
        return OptionalResolution(
            resolved=resolved,
            optional_references=optional,
            literal="".join(n.text for n in nodes if isinstance(n, Literal)),
            has_required=any(isinstance(n, Placeholder) and not n.optional for n in nodes),
        )

    # ── rendering ────────────────────────────────────────────────────────

    async def _render(
        self,
        template: str,
        context: VariableContext,
        depth: int,
        optional: dict[str, bool] | None,
    ) -> str:
        if depth > MAX_RESOLUTION_DEPTH:
            raise VariableResolutionError(
                f"Maximum variable resolution depth reached while resolving '{template}'. "
                "Check for circular references.",
                template,
            )
        out: list[str] = []
        for node in parse_template(template):
            if isinstance(node, Literal):
                out.append(node.text)
                continue
            try:
                value = await self._evaluate(node, context, depth)
            except UndefinedVariableError:
                if not node.optional:
                    raise
                if optional is not None:
                    optional.setdefault(node.reference, False)
                logger.debug("Optional variable '%s' is undefined", node.reference)
                continue
            if node.optional and optional is not None:
                optional[node.reference] = True
            out.append(stringify_value(value))
        return "".join(out)

    async def _evaluate(self, node: Placeholder, context: VariableContext, depth: int) -> Any:
        reference = node.reference
        if not reference:
            raise VariableResolutionError(f"Empty variable reference '{node.raw}'", node.raw)
        try:
            call = parse_call(reference)
        except TemplateSyntaxError as e:
            raise VariableResolutionError(str(e), reference) from e
        if call is not None:
            return await self._call_function(call, reference, context, depth)
        if any(isinstance(part, Placeholder) for part in node.parts):
            reference = await self._render(reference, context, depth, None)
        return await self._lookup(reference, context, depth)

    async def _call_function(
        self,
        call: Call,
        reference: str,
        context: VariableContext,
        depth: int,
    ) -> Any:
        function = None
        if context.plugins is not None:
            if call.plugin not in context.plugins.loaded:
                raise VariableResolutionError(f"Plugin '{call.plugin}' not found", reference)
            function = context.plugins.get_parameterized_source(call.plugin, call.function)
        if function is None:
            raise VariableResolutionError(
                f"Parameterized function '{call.function}' not found in plugin '{call.plugin}'",
                reference,
            )
        args = []
        for arg in call.arguments:
            if isinstance(arg, NumberArg):
                args.append(arg.value)
            elif isinstance(arg, StringArg):
                args.append(await self._render(arg.text, context, depth, None))
            else:
                args.append(await self._evaluate(parse_template(arg.text)[0], context, depth))
        try:
            return await maybe_await(function(*args))
        except Exception as e:
            raise VariableResolutionError(
                f"Parameterized function '{call.plugin}.{call.function}' failed to execute: {e}",
                reference,
            ) from e

    # ── lookups ──────────────────────────────────────────────────────────

    async def _lookup(self, reference: str, context: VariableContext, depth: int) -> Any:
        if reference.startswith("$"):
            return self._dynamic(reference)
        scope, dot, rest = reference.partition(".")
        if not dot:
            return await self._lookup_unqualified(reference, context, depth)
        if not rest:
            raise VariableResolutionError(f"Invalid variable reference '{reference}'", reference)
        if scope == "env":
            return self._scoped(context.env, rest, reference, "environment")
        if scope == "secret":
            return await self._secret(rest, reference, context)
        if scope == "plugins":
            return await self._plugin_variable(rest, reference, context)
        if scope == "steps":
            return self._step_value(rest, reference, context)
        if scope == "chain":
            prefix, dot, name = rest.partition(".")
            if prefix != "vars" or not name:
                raise VariableResolutionError(
                    f"Invalid chain reference '{reference}'. Expected chain.vars.NAME",
                    reference,
                )
            return await self._expand(self._scoped(context.chain_vars, name, reference, "chain"), context, depth)
        named = {
            "cli": context.cli,
            "profile": context.profile,
            "api": context.api,
            "endpoint": context.endpoint,
            "global": context.global_vars,
        }
        if scope not in named:
            raise VariableResolutionError(f"Unknown variable scope '{scope}' in '{reference}'", reference)
        return await self._expand(self._scoped(named[scope], rest, reference, scope), context, depth)

    async def _lookup_unqualified(self, name: str, context: VariableContext, depth: int) -> Any:
        for scope, values in context.scopes():
            value = values.get(name)
            if value is None:
                continue
            logger.debug("Variable '%s' resolved from %s scope", name, scope)
            if scope == "env":
                return value
            return await self._expand(value, context, depth)
        raise UndefinedVariableError(f"Variable '{name}' could not be resolved", name)

    async def _expand(self, value: Any, context: VariableContext, depth: int) -> Any:
        """Config values may themselves hold placeholders."""
        if isinstance(value, str) and "{{" in value:
            return await self._render(value, context, depth + 1, None)
        return value

    def _scoped(self, values: dict[str, Any], path: str, reference: str, scope: str) -> Any:
        value = values.get(path)
        if value is None and "." in path:
            found, value = find_value(values, path)
            if not found:
                value = None
        if value is None:
            raise UndefinedVariableError(
                f"Variable '{path}' is not defined in {scope} scope",
                reference,
            )
        return value

    def _dynamic(self, reference: str) -> str:
        if reference == "$timestamp":
            return str(int(_time.time()))
        if reference == "$isoTimestamp":
            now = datetime.datetime.now(datetime.timezone.utc)
            return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")
        if reference == "$guid":
            return str(uuid.uuid4())
        if reference == "$randomInt":
            return str(random.randint(0, 999999))
        if reference.startswith("$randomInt"):
            m = _RANDOM_INT_RE.match(reference)
            if not m:
                raise VariableResolutionError(
                    f"Invalid parameters for {reference}. Use format: {{{{$randomInt(min,max)}}}}",
                    reference,
                )
            low, high = int(m.group(1)), int(m.group(2))
            if low >= high:
                raise VariableResolutionError(
                    f"Invalid range for {reference}: min ({low}) must be less than max ({high})",
                    reference,
                )
            return str(random.randint(low, high))
        raise VariableResolutionError(f"Unknown dynamic variable '{reference}'", reference)

    async def _secret(self, name: str, reference: str, context: VariableContext) -> Any:
        value = None
        for resolver in context.plugins.secret_resolvers if context.plugins else []:
            try:
                value = await maybe_await(resolver(name))
            except Exception as e:
                logger.warning("Secret resolver failed for '%s': %s", name, e)
                continue
            if value is not None:
                break
        if value is None:
            value = context.env.get(name)
        if value is None:
            raise UndefinedVariableError(f"Secret '{name}' could not be resolved", reference)
        context.secret_values.add(stringify_value(value))
        return value

    async def _plugin_variable(self, rest: str, reference: str, context: VariableContext) -> Any:
        plugin, dot, member = rest.partition(".")
        if not dot or not plugin or not member:
            raise VariableResolutionError(
                f"Invalid plugin reference '{reference}'. Expected plugins.NAME.VARIABLE",
                reference,
            )
        if context.plugins is None or plugin not in context.plugins.loaded:
            raise VariableResolutionError(f"Plugin '{plugin}' not found", reference)
        source = context.plugins.get_variable_source(plugin, member)
        if source is None:
            raise VariableResolutionError(
                f"Variable '{member}' not found in plugin '{plugin}'",
                reference,
            )
        try:
            value = await maybe_await(source())
        except Exception as e:
            raise VariableResolutionError(
                f"Plugin variable '{plugin}.{member}' failed to resolve: {e}",
                reference,
            ) from e
        if value is None:
            raise UndefinedVariableError(f"Plugin variable '{plugin}.{member}' has no value", reference)
        return value

    def _step_value(self, rest: str, reference: str, context: VariableContext) -> Any:
        step_id, _, path = rest.partition(".")
        record = context.steps.get(step_id)
        if record is None:
            raise UndefinedVariableError(
                f"Step '{step_id}' has not been executed in this chain",
                reference,
            )
        view = {
            part: {**data, "body": parse_structured_body(data.get("body"))}
            for part, data in record.items()
            if isinstance(data, dict)
        }
        if not path:
            return view
        found, value = find_value(view, path)
        if not found or value is None:
            raise UndefinedVariableError(
                f"Path '{path}' not found in step '{step_id}'",
                reference,
            )
        return value
