"""
Definition storage.

Definitions are stored as raw bytes keyed by machine id. The local
backend keeps one ``<id>.json``/``<id>.yaml``/``<id>.yml`` file per
machine in a directory.
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
import aiofiles.os
import yaml

from .errors import DefinitionError
from .monitoring import get_logger

logger = get_logger(__name__)

DEFINITION_SUFFIXES = (".json", ".yaml", ".yml")


class DefinitionStore(ABC):
    """Abstract storage backend for machine definitions."""

    @abstractmethod
    async def list(self) -> List[str]:
        """Identifiers of every stored definition."""
        pass

    @abstractmethod
    async def read(self, machine_id: str) -> Optional[bytes]:
        pass

    @abstractmethod
    async def write(self, machine_id: str, content: bytes) -> None:
        pass

    @abstractmethod
    async def delete(self, machine_id: str) -> bool:
        """Delete a definition; False if it did not exist."""
        pass

    def format_of(self, machine_id: str) -> str:
        """Serialization format of a stored definition (``json`` or ``yaml``)."""
        return "json"


def parse_definition(raw: bytes, fmt: str = "json") -> Dict[str, Any]:
    """
    Decode a stored definition.

    Raises:
        DefinitionError: If the content is not valid JSON/YAML or not an object
    """
    try:
        text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
        if fmt in ("yaml", "yml"):
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise DefinitionError(f"Cannot parse {fmt} definition: {e}") from e

    if not isinstance(data, dict):
        raise DefinitionError(f"Definition must be an object, got {type(data).__name__}")
    return data


def dump_definition(definition: Dict[str, Any], fmt: str = "json") -> bytes:
    """Encode a definition for storage."""
    if fmt in ("yaml", "yml"):
        return yaml.safe_dump(definition, sort_keys=False).encode("utf-8")
    return json.dumps(definition, indent=2).encode("utf-8")


class LocalDefinitionStore(DefinitionStore):
    """File-based definition store."""

    def __init__(self, base_dir: str = "fsm_definitions"):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, machine_id: str) -> Optional[Path]:
        """Existing file for an id, trying each suffix in order."""
        if not machine_id or "/" in machine_id or "\\" in machine_id or machine_id.startswith("."):
            raise DefinitionError(f"Invalid machine id: {machine_id!r}", machine_id)
        for suffix in DEFINITION_SUFFIXES:
            path = self.base_dir / f"{machine_id}{suffix}"
            if path.exists():
                return path
        return None

    def format_of(self, machine_id: str) -> str:
        path = self._path(machine_id)
        if path is not None and path.suffix in (".yaml", ".yml"):
            return "yaml"
        return "json"

    async def list(self) -> List[str]:
        ids = {
            path.stem
            for path in self.base_dir.iterdir()
            if path.is_file() and path.suffix in DEFINITION_SUFFIXES
        }
        return sorted(ids)

    async def read(self, machine_id: str) -> Optional[bytes]:
        path = self._path(machine_id)
        if path is None:
            return None
        async with aiofiles.open(path, 'rb') as f:
            return await f.read()

    async def write(self, machine_id: str, content: bytes) -> None:
        path = self._path(machine_id) or self.base_dir / f"{machine_id}.json"
        async with aiofiles.open(path, 'wb') as f:
            await f.write(content)
        logger.info(f"Saved definition to {path}")

    async def delete(self, machine_id: str) -> bool:
        path = self._path(machine_id)
        if path is None:
            return False
        await aiofiles.os.remove(path)
        logger.info(f"Deleted definition file {path}")
        return True


class MemoryDefinitionStore(DefinitionStore):
    """In-memory store for tests and embedding."""

    def __init__(self, definitions: Optional[Dict[str, Any]] = None):
        self._store: Dict[str, bytes] = {}
        for machine_id, definition in (definitions or {}).items():
            if isinstance(definition, (bytes, bytearray)):
                self._store[machine_id] = bytes(definition)
            else:
                self._store[machine_id] = dump_definition(definition)

    async def list(self) -> List[str]:
        return sorted(self._store)

    async def read(self, machine_id: str) -> Optional[bytes]:
        return self._store.get(machine_id)

    async def write(self, machine_id: str, content: bytes) -> None:
        self._store[machine_id] = content

    async def delete(self, machine_id: str) -> bool:
        return self._store.pop(machine_id, None) is not None


__all__ = [
    "DefinitionStore",
    "LocalDefinitionStore",
    "MemoryDefinitionStore",
    "parse_definition",
    "dump_definition",
]
