"""Capability providers: built-in vault tools, environment tools, capability servers."""
from .vault_tools import VaultToolProvider
from .environment_tools import (
    EnvironmentHost,
    EnvironmentToolProvider,
    VaultEnvironmentHost,
)

__all__ = [
    "VaultToolProvider",
    "EnvironmentHost",
    "EnvironmentToolProvider",
    "VaultEnvironmentHost",
    "McpCapabilityProvider",
]


def __getattr__(name: str):
    if name == "McpCapabilityProvider":
        from .mcp_client import McpCapabilityProvider
        return McpCapabilityProvider
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
