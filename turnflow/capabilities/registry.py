from __future__ import annotations

import importlib
import inspect
from typing import Any

from turnflow.capabilities.base import Capability, CapabilitySpec, FunctionCapability
from turnflow.config import AgentConfig, CapabilityConfig
from turnflow.errors import ConfigError


def load_handler(import_path: str) -> Capability:
    """Resolve ``"package.module:attr"`` to a capability instance."""
    module_name, _, attr = import_path.partition(":")
    if not module_name or not attr:
        raise ConfigError(f"Capability handler must look like 'module:attr': {import_path}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"Cannot import capability module {module_name}: {exc}") from exc
    target: Any = getattr(module, attr, None)
    if target is None:
        raise ConfigError(f"Capability handler not found: {import_path}")
    if inspect.isclass(target):
        target = target()
    if hasattr(target, "execute"):
        return target
    if callable(target):
        return FunctionCapability(target)
    raise ConfigError(f"Capability handler is not callable: {import_path}")


class CapabilityRegistry:
    def __init__(self) -> None:
        self._specs: dict[str, CapabilitySpec] = {}

    def register(self, spec: CapabilitySpec) -> None:
        if spec.name in self._specs:
            raise ConfigError(f"Capability registered twice: {spec.name}")
        self._specs[spec.name] = spec

    def resolve(self, name: str) -> CapabilitySpec | None:
        return self._specs.get(name)

    def names(self) -> list[str]:
        return sorted(self._specs)

    def specs(self, allowed: list[str] | None = None) -> list[CapabilitySpec]:
        names = self.names() if allowed is None else [n for n in allowed if n in self._specs]
        return [self._specs[name] for name in names]

    def tool_schemas(self, allowed: list[str] | None = None) -> list[dict[str, Any]]:
        return [spec.tool_schema() for spec in self.specs(allowed)]

    @staticmethod
    def spec_from_config(name: str, entry: CapabilityConfig, handler: Capability) -> CapabilitySpec:
        return CapabilitySpec(
            name=name,
            handler=handler,
            description=entry.description,
            execution=entry.execution,
            on_error=entry.on_error,
            requires_approval=entry.requires_approval,
            approvers=list(entry.approvers),
            max_attempts=entry.max_attempts,
        )

    @classmethod
    def from_config(cls, config: AgentConfig) -> CapabilityRegistry:
        registry = cls()
        for name, entry in config.capabilities.items():
            registry.register(cls.spec_from_config(name, entry, load_handler(entry.handler)))
        for agent_name, profile in config.agents.items():
            for capability in profile.capabilities or []:
                if registry.resolve(capability) is None:
                    raise ConfigError(
                        f"Agent {agent_name} references unknown capability: {capability}"
                    )
        return registry
