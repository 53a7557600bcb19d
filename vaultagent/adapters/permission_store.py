"""Persistent storage for always-allowed tool names.

Stores allowed tools at two levels:
- Global: ~/.vaultagent/allowed_tools.json (applies to every vault)
- Vault: <vault>/.vaultagent/allowed_tools.json
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from vaultagent.shared.services.durable_write import atomic_write_text

logger = logging.getLogger(__name__)

GLOBAL_DIR = Path.home() / ".vaultagent"
FILENAME = "allowed_tools.json"


class PermissionStore:
    """Load and save AllowAlways decisions."""

    def __init__(
        self,
        vault_dir: Path | None = None,
        global_dir: Path | None = None,
    ) -> None:
        self._global_path = (global_dir or GLOBAL_DIR) / FILENAME
        self._vault_path = (
            vault_dir / ".vaultagent" / FILENAME if vault_dir else None
        )

    def load(self) -> set[str]:
        """Load all allowed tools (global + vault merged)."""
        allowed = self._load_file(self._global_path)
        if self._vault_path:
            allowed |= self._load_file(self._vault_path)
        return allowed

    def add(self, tool_name: str) -> None:
        """Persist at vault level, or globally when there is no vault."""
        if not self._vault_path:
            self.add_global(tool_name)
            return
        self._add_to_file(self._vault_path, tool_name)

    def add_global(self, tool_name: str) -> None:
        self._add_to_file(self._global_path, tool_name)

    @staticmethod
    def _load_file(path: Path) -> set[str]:
        if not path.exists():
            return set()
        try:
            data = json.loads(path.read_text())
            if isinstance(data, list):
                return {str(name) for name in data}
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to load %s", path)
        return set()

    @staticmethod
    def _add_to_file(path: Path, tool_name: str) -> None:
        existing = PermissionStore._load_file(path)
        if tool_name in existing:
            return
        existing.add(tool_name)
        try:
            atomic_write_text(path, json.dumps(sorted(existing), indent=2) + "\n")
        except OSError:
            logger.warning("Failed to write %s", path)
        else:
            logger.info("Always-allowed tool %s saved to %s", tool_name, path)
