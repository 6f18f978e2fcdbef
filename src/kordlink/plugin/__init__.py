"""Plugin system for kordlink.

Built on pluggy.  Built-in plugins come from a static registry and can be
disabled in config.toml (``[plugins.<name>] enabled = false``); third-party
plugins register through the ``kordlink`` entry-point group.

Usage:
    from kordlink.plugin import call_hook, get_plugin_manager

    pm = get_plugin_manager()
    await call_hook(pm.hook.kordlink_message, sock=sock, message=msg)
"""

from __future__ import annotations

import importlib
from typing import Any

import pluggy

from kordlink.config import get_settings
from kordlink.logger import logger
from kordlink.plugin.hookspecs import KordlinkSpec
from kordlink.utils import maybe_await

__all__ = [
    "call_hook",
    "get_plugin_manager",
    "hookimpl",
]

hookimpl = pluggy.HookimplMarker("kordlink")

# Static registry of built-in plugins: (module_path, class_name, config_key).
_BUILTIN_PLUGIN_SPECS: list[tuple[str, str, str]] = [
    ("kordlink.plugins.whatsapp", "WhatsAppTransportPlugin", "whatsapp"),
    ("kordlink.plugins.activity_log", "ActivityLogPlugin", "activity-log"),
]


def get_plugin_manager() -> pluggy.PluginManager:
    """Create the plugin manager and register built-in and entry-point plugins."""
    pm = pluggy.PluginManager("kordlink")
    pm.add_hookspecs(KordlinkSpec)

    s = get_settings()
    for module_path, class_name, config_key in _BUILTIN_PLUGIN_SPECS:
        plugin_cfg = s.plugins.get(config_key)
        if plugin_cfg is not None and not plugin_cfg.enabled:
            logger.info("Plugin disabled via config", plugin=config_key)
            continue
        try:
            mod = importlib.import_module(module_path)
            cls = getattr(mod, class_name)
            pm.register(cls(), name=f"builtin-{config_key}")
            logger.info("Registered built-in plugin", name=config_key)
        except ImportError:
            # Graceful skip for plugins with optional deps (neonize)
            logger.debug("Plugin skipped (optional dependency missing)", plugin=config_key)
        except Exception:
            logger.exception("Failed to load built-in plugin", plugin=config_key)

    discovered = pm.load_setuptools_entrypoints("kordlink")
    if discovered:
        logger.info("Discovered third-party plugins", count=discovered)

    plugin_names = [pm.get_name(p) for p in pm.get_plugins()]
    logger.info("Plugin manager ready", plugins=plugin_names)
    return pm


async def call_hook(hook: Any, **kwargs: Any) -> list[Any]:
    """Call a (non-firstresult) hook and await any coroutine results, in order."""
    results = hook(**kwargs)
    return [await maybe_await(result) for result in results]
