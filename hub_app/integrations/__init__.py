"""
Integration hub feature package.

Registers the JSON blueprint, CLI group and Celery worker, and validates the
configured adapter list against the registry.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from flask import Flask

from .celery_app import EXTENSION_KEY, ensure_celery_app, get_celery_app
from .cli import integrations_cli
from .metrics import record_adapter_status
from .registry import AdapterDescriptor, get_adapter_registry, resolve_adapters
from .views import integrations_blueprint

__all__ = [
    "init_integrations",
    "EXTENSION_KEY",
    "get_celery_app",
]


def _ensure_extension_state(app: Flask) -> dict:
    return app.extensions.setdefault(
        EXTENSION_KEY,
        {
            "configured_adapters": (),
            "active_adapters": (),
            "worker_enabled": False,
            "celery_app": None,
        },
    )


def _set_cli(app: Flask) -> None:
    # Avoid duplicate registrations when running tests
    command_name = integrations_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)
    app.cli.add_command(integrations_cli)


def init_integrations(app: Flask) -> None:
    """
    Mount the integrations blueprint and CLI and prepare the Celery app.

    State lives in ``app.extensions['integrations']`` for the CLI, views and
    worker helpers.
    """
    configured_adapters: Tuple[str, ...] = tuple(app.config.get("INTEGRATIONS_ADAPTERS") or ())
    registry = get_adapter_registry()
    active_descriptors: Iterable[AdapterDescriptor] = resolve_adapters(configured_adapters, registry)

    state = _ensure_extension_state(app)
    state.update(
        {
            "configured_adapters": configured_adapters,
            "active_adapters": tuple(active_descriptors),
            "worker_enabled": bool(app.config.get("INTEGRATIONS_WORKER_ENABLED", False)),
        }
    )
    for name in registry:
        record_adapter_status(name, "enabled" if name in configured_adapters else "disabled")

    ensure_celery_app(app, state)

    if integrations_blueprint.name not in app.blueprints:
        app.register_blueprint(integrations_blueprint)
    _set_cli(app)

    adapter_names = ", ".join(adapter.name for adapter in state["active_adapters"]) or "none"
    app.logger.info(
        "Integration hub enabled with adapters: %s",
        adapter_names,
        extra={"integration_worker_enabled": state["worker_enabled"]},
    )
