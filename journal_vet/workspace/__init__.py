"""Workspace core: tenancy, invites and journal processing."""

from __future__ import annotations

from importlib import import_module
from typing import Any

_EXPORTS = {
    # Models
    "Base": ".models",
    "Invite": ".models",
    "InviteStatus": ".models",
    "Journal": ".models",
    "JournalStatus": ".models",
    "Profile": ".models",
    "Template": ".models",
    "TemplateKind": ".models",
    "Workspace": ".models",
    "WorkspaceMember": ".models",
    # Authorization
    "AccessEvaluator": ".authz",
    "Actor": ".authz",
    "EntityKind": ".authz",
    "Operation": ".authz",
    # Services
    "InviteService": ".invites",
    "JournalService": ".journals",
    "PipelineGateway": ".pipeline",
    "WorkspaceDatabase": ".service",
    "WorkspaceService": ".service",
    "WorkspaceSettings": ".service",
    "bootstrap_account": ".service",
    "init_engine": ".service",
    "seed_reference_data": ".service",
    # API
    "create_app": ".api",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:  # pragma: no cover - thin import shim
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    value = getattr(import_module(module_name, __name__), name)
    globals()[name] = value
    return value


def __dir__() -> list[str]:  # pragma: no cover - introspection helper
    return sorted(__all__)
