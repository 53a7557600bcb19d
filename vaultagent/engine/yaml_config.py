"""YAML settings loader.

User-facing settings live in one YAML file, by default
``~/.vaultagent/settings.yaml``. Engine tuning (timeouts, endpoints)
stays in env vars, see config.py.

Example YAML:
    apiKey: sk-ant-...
    model: sonnet            # sonnet | opus | haiku
    autoApproveVaultReads: true
    autoApproveVaultWrites: false
    requireBashApproval: true
    alwaysAllowedTools: [Grep, mcp__vault__open_note]
    maxBudgetPerSession: 10.0
    maxTurns: 50
    mcpServers:
      - id: mcp-1718000000000
        name: calendar
        command: npx
        args: ["-y", "calendar-mcp"]
        env:
          CALENDAR_TOKEN: "..."
        enabled: true

Bad values never make the file unusable: invalid scalars fall back to
their defaults and malformed server entries are dropped, each with a
warning.
"""
from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from vaultagent.shared.services.durable_write import atomic_write_text

from .errors import SettingsError
from .models import McpServerConfig, ModelTier, SessionPolicy
from .permissions import ENVIRONMENT_SERVER

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = Path.home() / ".vaultagent" / "settings.yaml"

# Tool names are mcp__<server>__<op>, split on the first "__", so a
# server name may not contain "__" or end in "_".
_SERVER_NAME = re.compile(r"^(?!.*__)[A-Za-z0-9_-]*[A-Za-z0-9-]$")


@dataclass
class SessionSettings:
    api_key: str | None = None
    model: ModelTier = ModelTier.SONNET
    auto_approve_vault_reads: bool = True
    auto_approve_vault_writes: bool = False
    require_bash_approval: bool = True
    always_allowed_tools: list[str] = field(default_factory=list)
    max_budget_per_session: float = 10.0
    max_turns: int = 50
    mcp_servers: list[McpServerConfig] = field(default_factory=list)

    @property
    def enabled_servers(self) -> list[McpServerConfig]:
        return [s for s in self.mcp_servers if s.enabled]

    def resolve_api_key(self) -> str | None:
        """Settings key first, then ANTHROPIC_API_KEY."""
        return self.api_key or os.getenv("ANTHROPIC_API_KEY")

    def to_policy(self, extra_allowed: set[str] | None = None) -> SessionPolicy:
        allowed = set(self.always_allowed_tools)
        if extra_allowed:
            allowed |= extra_allowed
        return SessionPolicy(
            auto_approve_vault_reads=self.auto_approve_vault_reads,
            auto_approve_vault_writes=self.auto_approve_vault_writes,
            require_bash_approval=self.require_bash_approval,
            always_allowed_tools=allowed,
            max_budget_per_session=self.max_budget_per_session,
            max_turns=self.max_turns,
        )


def _bool(raw: dict, key: str, default: bool) -> bool:
    value = raw.get(key, default)
    if isinstance(value, bool):
        return value
    logger.warning("settings: %s must be true/false, got %r; using %s", key, value, default)
    return default


def _positive_float(raw: dict, key: str, default: float) -> float:
    value = raw.get(key, default)
    if isinstance(value, bool):
        value = None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        parsed = 0.0
    if parsed > 0:
        return parsed
    logger.warning("settings: %s must be a positive number, got %r; using %s", key, value, default)
    return default


def _positive_int(raw: dict, key: str, default: int) -> int:
    value = raw.get(key, default)
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    if isinstance(value, str) and value.strip().isdigit() and int(value) > 0:
        return int(value)
    logger.warning("settings: %s must be a positive integer, got %r; using %s", key, value, default)
    return default


def _model(raw: dict) -> ModelTier:
    value = raw.get("model", ModelTier.SONNET.value)
    try:
        return ModelTier(str(value).lower())
    except ValueError:
        logger.warning("settings: unknown model %r; using sonnet", value)
        return ModelTier.SONNET


def _tool_names(raw: dict) -> list[str]:
    value = raw.get("alwaysAllowedTools") or []
    if not isinstance(value, list):
        logger.warning("settings: alwaysAllowedTools must be a list; ignoring")
        return []
    names: list[str] = []
    for item in value:
        if isinstance(item, str) and item and item not in names:
            names.append(item)
    return names


def parse_server(entry: Any) -> McpServerConfig | None:
    """Parse one mcpServers entry, or None if it is malformed."""
    if not isinstance(entry, dict):
        logger.warning("settings: mcpServers entry is not a mapping: %r", entry)
        return None
    name = entry.get("name")
    command = entry.get("command")
    if not isinstance(name, str) or not _SERVER_NAME.match(name):
        logger.warning("settings: mcpServers entry has invalid name %r; skipped", name)
        return None
    if name == ENVIRONMENT_SERVER:
        logger.warning("settings: server name %r is reserved; skipped", name)
        return None
    if not isinstance(command, str) or not command.strip():
        logger.warning("settings: server %s has no command; skipped", name)
        return None
    args = entry.get("args") or []
    if not isinstance(args, list):
        logger.warning("settings: server %s args must be a list; skipped", name)
        return None
    env = entry.get("env")
    if env is not None and not isinstance(env, dict):
        logger.warning("settings: server %s env must be a mapping; skipped", name)
        return None
    server_id = entry.get("id") or f"mcp-{int(time.time() * 1000)}"
    return McpServerConfig(
        id=str(server_id),
        name=name,
        command=command,
        args=[str(a) for a in args],
        env={str(k): str(v) for k, v in env.items()} if env else None,
        enabled=entry.get("enabled", True) is not False,
    )


def _servers(raw: dict) -> list[McpServerConfig]:
    value = raw.get("mcpServers") or []
    if not isinstance(value, list):
        logger.warning("settings: mcpServers must be a list; ignoring")
        return []
    servers: list[McpServerConfig] = []
    seen: set[str] = set()
    for entry in value:
        server = parse_server(entry)
        if server is None:
            continue
        if server.name in seen:
            logger.warning("settings: duplicate server name %s; skipped", server.name)
            continue
        seen.add(server.name)
        servers.append(server)
    return servers


def parse_settings(raw: dict) -> SessionSettings:
    api_key = raw.get("apiKey")
    return SessionSettings(
        api_key=api_key if isinstance(api_key, str) and api_key else None,
        model=_model(raw),
        auto_approve_vault_reads=_bool(raw, "autoApproveVaultReads", True),
        auto_approve_vault_writes=_bool(raw, "autoApproveVaultWrites", False),
        require_bash_approval=_bool(raw, "requireBashApproval", True),
        always_allowed_tools=_tool_names(raw),
        max_budget_per_session=_positive_float(raw, "maxBudgetPerSession", 10.0),
        max_turns=_positive_int(raw, "maxTurns", 50),
        mcp_servers=_servers(raw),
    )


def load_settings(path: str | Path | None = None) -> SessionSettings:
    """Load settings from YAML. A missing file yields defaults."""
    path = Path(path) if path else DEFAULT_SETTINGS_PATH
    if not path.is_file():
        logger.info("load_settings: %s not found, using defaults", path)
        return SessionSettings()
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        logger.error("load_settings: YAML parse error in %s: %s", path, exc)
        raise SettingsError(str(path), str(exc)) from exc
    if not isinstance(raw, dict):
        raise SettingsError(str(path), "top level must be a mapping")
    settings = parse_settings(raw)
    logger.info(
        "load_settings: %s model=%s servers=%d always_allowed=%d",
        path, settings.model.value, len(settings.mcp_servers),
        len(settings.always_allowed_tools),
    )
    return settings


def settings_to_dict(settings: SessionSettings) -> dict[str, Any]:
    data: dict[str, Any] = {}
    if settings.api_key:
        data["apiKey"] = settings.api_key
    data.update({
        "model": settings.model.value,
        "autoApproveVaultReads": settings.auto_approve_vault_reads,
        "autoApproveVaultWrites": settings.auto_approve_vault_writes,
        "requireBashApproval": settings.require_bash_approval,
        "alwaysAllowedTools": list(settings.always_allowed_tools),
        "maxBudgetPerSession": settings.max_budget_per_session,
        "maxTurns": settings.max_turns,
        "mcpServers": [
            {
                "id": s.id,
                "name": s.name,
                "command": s.command,
                "args": list(s.args),
                **({"env": dict(s.env)} if s.env else {}),
                "enabled": s.enabled,
            }
            for s in settings.mcp_servers
        ],
    })
    return data


def save_settings(settings: SessionSettings, path: str | Path | None = None) -> Path:
    path = Path(path) if path else DEFAULT_SETTINGS_PATH
    atomic_write_text(
        path, yaml.safe_dump(settings_to_dict(settings), sort_keys=False),
    )
    logger.info("save_settings: wrote %s", path)
    return path
