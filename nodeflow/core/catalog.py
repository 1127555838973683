"""Node definition catalog and file loader."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import pydantic
import yaml

from nodeflow.core.graph_schema import NodeDefinition

logger = logging.getLogger(__name__)

PACKAGE_DIR = Path(__file__).parent.parent
BUILTIN_CATALOG = PACKAGE_DIR / "catalog" / "builtin.yaml"

DEFINITION_SUFFIXES = (".yaml", ".yml", ".json")


class CatalogError(Exception):
    """Catalog source could not be read."""

    pass


class NodeCatalog:
    """Read-only lookup of node definitions by type id.

    Registration is first-wins: a later definition with an already known id is
    ignored unless replace=True.
    """

    REQUIRED_FIELDS = ("id", "name", "version")

    def __init__(self, definitions: Iterable[NodeDefinition] | None = None) -> None:
        self._definitions: dict[str, NodeDefinition] = {}
        self.load_errors: list[tuple[str, str]] = []
        for definition in definitions or []:
            self.register(definition)

    def __contains__(self, type_id: str) -> bool:
        return type_id in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def get(self, type_id: str) -> NodeDefinition | None:
        return self._definitions.get(type_id)

    def all(self) -> list[NodeDefinition]:
        return list(self._definitions.values())

    def register(self, definition: NodeDefinition, replace: bool = False) -> bool:
        """Add a definition. Returns False when an existing one was kept."""
        if definition.id in self._definitions and not replace:
            logger.debug(f"Definition '{definition.id}' already registered, keeping first")
            return False
        self._definitions[definition.id] = definition
        return True

    # ========== File loading ==========

    def load_path(self, path: Path) -> int:
        """Load a definition file or every definition file under a directory."""
        path = Path(path)
        if path.is_dir():
            return sum(
                self.load_file(p)
                for p in sorted(path.rglob("*"))
                if p.suffix in DEFINITION_SUFFIXES
            )
        return self.load_file(path)

    def load_file(self, path: Path) -> int:
        """
        Load node definitions from a YAML or JSON file.

        The file may hold one definition, a list of definitions, or a mapping
        with a "nodes" list. Invalid entries are recorded in load_errors and
        skipped.

        Returns:
            Number of definitions registered from this file

        Raises:
            CatalogError: If the file cannot be read or parsed
        """
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                if path.suffix == ".json":
                    raw = json.load(f)
                else:
                    raw = yaml.safe_load(f)
        except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
            raise CatalogError(f"Cannot read node definitions from {path}: {e}") from e

        if isinstance(raw, dict) and "nodes" in raw:
            entries = raw["nodes"]
        elif isinstance(raw, list):
            entries = raw
        elif isinstance(raw, dict):
            entries = [raw]
        else:
            entries = []

        loaded = 0
        for entry in entries or []:
            definition = self._parse_entry(entry, path)
            if definition is not None and self.register(definition):
                loaded += 1

        logger.info(f"Loaded {loaded} node definition(s) from {path}")
        if self.load_errors:
            logger.warning(f"{len(self.load_errors)} node definition(s) failed to load")
        return loaded

    def _parse_entry(self, entry: Any, source: Path) -> NodeDefinition | None:
        if not isinstance(entry, dict):
            self.load_errors.append((str(source), "Definition entry is not a mapping"))
            return None

        missing = [f for f in self.REQUIRED_FIELDS if entry.get(f) in (None, "")]
        if missing:
            self.load_errors.append(
                (str(source), f"Definition missing required fields: {', '.join(missing)}")
            )
            return None

        data = dict(entry)
        if data.pop("execution_file", data.pop("executionFile", False)):
            code_path = source.with_name(f"{data['id']}.py")
            if not code_path.exists():
                code_path = source.with_suffix(".py")
            if not code_path.exists():
                self.load_errors.append(
                    (str(source), f"execution_file set for '{data['id']}' but no .py file found")
                )
                return None
            data["execution_code"] = code_path.read_text(encoding="utf-8")

        try:
            return NodeDefinition.model_validate(data)
        except pydantic.ValidationError as e:
            first = e.errors()[0]
            loc = ".".join(str(x) for x in first["loc"])
            self.load_errors.append((str(source), f"{data['id']}: {loc}: {first['msg']}"))
            return None

    @classmethod
    def builtin(cls) -> NodeCatalog:
        """Catalog pre-loaded with the packaged built-in node definitions."""
        catalog = cls()
        catalog.load_file(BUILTIN_CATALOG)
        return catalog


def load_catalog(paths: Iterable[Path | str] = (), include_builtin: bool = True) -> NodeCatalog:
    """Build a catalog from definition files.

    User definitions are loaded first so they take precedence over built-ins
    with the same id.
    """
    catalog = NodeCatalog()
    for path in paths:
        catalog.load_path(Path(path))
    if include_builtin:
        catalog.load_file(BUILTIN_CATALOG)
    return catalog
