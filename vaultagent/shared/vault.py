"""Vault adapter: path-based access to the user's document tree.

All paths are vault-relative with forward slashes. ``LocalVaultAdapter``
maps them onto a directory and refuses anything that resolves outside
of it.
"""
from __future__ import annotations

import abc
import logging
import shutil
from pathlib import Path

from vaultagent.engine.errors import VaultPathError

logger = logging.getLogger(__name__)


class VaultAdapter(abc.ABC):
    @abc.abstractmethod
    async def exists(self, path: str) -> bool:
        ...

    @abc.abstractmethod
    async def read(self, path: str) -> str:
        ...

    @abc.abstractmethod
    async def write(self, path: str, content: str) -> None:
        """Create or replace a file, creating parent folders."""

    @abc.abstractmethod
    async def remove(self, path: str) -> None:
        ...

    @abc.abstractmethod
    async def mkdir(self, path: str) -> None:
        ...

    @abc.abstractmethod
    async def list(self, path: str) -> tuple[list[str], list[str]]:
        """Return (files, folders) directly under ``path``."""

    @abc.abstractmethod
    def get_base_path(self) -> str:
        ...


def normalize(path: str) -> str:
    """Canonical vault-relative form: no leading ./ or /, forward slashes."""
    cleaned = path.replace("\\", "/").strip()
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    cleaned = cleaned.strip("/")
    return "" if cleaned == "." else cleaned


class LocalVaultAdapter(VaultAdapter):
    def __init__(self, base_path: str | Path) -> None:
        self._base = Path(base_path).expanduser().resolve()

    def get_base_path(self) -> str:
        return str(self._base)

    def resolve(self, path: str) -> Path:
        """Absolute filesystem path for a vault path. Raises VaultPathError."""
        relative = normalize(path)
        target = (self._base / relative).resolve()
        if target != self._base and self._base not in target.parents:
            raise VaultPathError(path)
        return target

    def relative(self, target: Path) -> str:
        return target.relative_to(self._base).as_posix()

    async def exists(self, path: str) -> bool:
        return self.resolve(path).exists()

    async def read(self, path: str) -> str:
        return self.resolve(path).read_text(encoding="utf-8")

    async def write(self, path: str, content: str) -> None:
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        logger.debug("Vault write %s (%d chars)", normalize(path), len(content))

    async def remove(self, path: str) -> None:
        target = self.resolve(path)
        if target == self._base:
            raise VaultPathError(path)
        if target.is_dir():
            shutil.rmtree(target)
        else:
            target.unlink()

    async def mkdir(self, path: str) -> None:
        self.resolve(path).mkdir(parents=True, exist_ok=True)

    async def list(self, path: str) -> tuple[list[str], list[str]]:
        target = self.resolve(path)
        files: list[str] = []
        folders: list[str] = []
        for child in sorted(target.iterdir()):
            if child.name.startswith("."):
                continue
            if child.is_dir():
                folders.append(self.relative(child))
            else:
                files.append(self.relative(child))
        return files, folders
