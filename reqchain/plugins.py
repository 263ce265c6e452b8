"""reqchain plugins - registration surface for variable sources, secrets and hooks.

A plugin is handed a PluginContext and registers what it provides
through explicit callbacks. Everything registered lands in a
PluginRegistry that is passed to the resolver and HTTP client; there is
no module-level plugin state.
"""

from __future__ import annotations

import importlib
import inspect
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

VariableSource = Callable[[], Any]
ParameterizedVariableSource = Callable[..., Any]
SecretResolver = Callable[[str], Any]
PreRequestHook = Callable[[Any], Any]
PostResponseHook = Callable[[Any, Any], Any]


async def maybe_await(value: Any) -> Any:
    """Await *value* if it is awaitable, so sources may be sync or async."""
    if inspect.isawaitable(value):
        return await value
    return value


# ── Cache ────────────────────────────────────────────────────────────────


class CacheStore(ABC):
    """Key/value cache with per-entry expiry, owned by the plugin layer."""

    @abstractmethod
    def get(self, key: str) -> Any: ...

    @abstractmethod
    def set(self, key: str, value: Any, ttl: float | None = None) -> None: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...


class MemoryCache(CacheStore):
    """In-process cache. ``ttl`` is in seconds; None means no expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[Any, float | None]] = {}

    def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        self._entries[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)


# ── Plugin interface ─────────────────────────────────────────────────────


class PluginContext:
    """What a plugin sees during setup: its config and the registration callbacks."""

    def __init__(
        self,
        name: str,
        registry: PluginRegistry,
        config: dict[str, Any] | None = None,
    ):
        self.name = name
        self.config = config or {}
        self.cache = registry.cache
        self._registry = registry

    def register_variable_source(self, name: str, source: VariableSource) -> None:
        self._registry.variable_sources.setdefault(self.name, {})[name] = source

    def register_parameterized_variable_source(
        self,
        name: str,
        source: ParameterizedVariableSource,
    ) -> None:
        self._registry.parameterized_sources.setdefault(self.name, {})[name] = source

    def register_secret_resolver(self, resolver: SecretResolver) -> None:
        self._registry.secret_resolvers.append(resolver)

    def register_pre_request_hook(self, hook: PreRequestHook) -> None:
        self._registry.pre_request_hooks.append(hook)

    def register_post_response_hook(self, hook: PostResponseHook) -> None:
        self._registry.post_response_hooks.append(hook)


class Plugin(ABC):
    """Base class for plugins. ``setup`` may be sync or async."""

    name: str = ""

    @abstractmethod
    def setup(self, context: PluginContext) -> Awaitable[None] | None: ...


class _CallablePlugin(Plugin):
    def __init__(self, name: str, setup_fn: Callable[[PluginContext], Any]):
        self.name = name
        self._setup_fn = setup_fn

    def setup(self, context: PluginContext) -> Awaitable[None] | None:
        return self._setup_fn(context)


class PluginRegistry:
    """Everything plugins registered, keyed by plugin name where it applies."""

    def __init__(self, cache: CacheStore | None = None):
        self.cache: CacheStore = cache or MemoryCache()
        self.variable_sources: dict[str, dict[str, VariableSource]] = {}
        self.parameterized_sources: dict[str, dict[str, ParameterizedVariableSource]] = {}
        self.secret_resolvers: list[SecretResolver] = []
        self.pre_request_hooks: list[PreRequestHook] = []
        self.post_response_hooks: list[PostResponseHook] = []
        self.loaded: list[str] = []

    async def register(
        self,
        plugin: Plugin | Callable[[PluginContext], Any],
        name: str | None = None,
        config: dict[str, Any] | None = None,
    ) -> None:
        """Run a plugin's setup against this registry."""
        if not isinstance(plugin, Plugin):
            if not callable(plugin):
                raise TypeError(f"Plugin must be a Plugin or a setup callable, got {plugin!r}")
            plugin = _CallablePlugin(name or getattr(plugin, "__name__", ""), plugin)
        plugin_name = name or plugin.name or type(plugin).__name__
        if plugin_name in self.loaded:
            raise ValueError(f"Plugin '{plugin_name}' is already registered")
        await maybe_await(plugin.setup(PluginContext(plugin_name, self, config)))
        self.loaded.append(plugin_name)
        logger.debug(
            "Loaded plugin %s (%d variable sources, %d functions)",
            plugin_name,
            len(self.variable_sources.get(plugin_name, {})),
            len(self.parameterized_sources.get(plugin_name, {})),
        )

    def get_variable_source(self, plugin: str, member: str) -> VariableSource | None:
        return self.variable_sources.get(plugin, {}).get(member)

    def get_parameterized_source(
        self,
        plugin: str,
        function: str,
    ) -> ParameterizedVariableSource | None:
        return self.parameterized_sources.get(plugin, {}).get(function)


def load_plugin(target: str) -> Plugin | Callable[[PluginContext], Any]:
    """Import a plugin from ``"package.module:Attribute"``.

    The attribute may be a Plugin subclass (instantiated here), a Plugin
    instance, or a bare ``setup(context)`` callable.
    """
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Invalid plugin target '{target}'. Expected 'package.module:Attribute'")
    module = importlib.import_module(module_name)
    try:
        obj = getattr(module, attr)
    except AttributeError as e:
        raise ValueError(f"Plugin '{attr}' not found in module '{module_name}'") from e
    if inspect.isclass(obj) and issubclass(obj, Plugin):
        return obj()
    if isinstance(obj, Plugin) or callable(obj):
        return obj
    raise ValueError(f"'{target}' is not a plugin")
