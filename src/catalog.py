"""Catalog compilation from cached node facts and YAML manifests.

Manifest layout (manifestdir):
- site.yaml: {default: {classes, resources}, nodes: {<name>: {classes, resources}}}
- classes/<class>.yaml: {include: [classes], resources: [...]}

A resource is {type, title, parameters}. String values may reference
facts as ${fact_name}.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from common import CompileFailure

logger = logging.getLogger(__name__)

FACT_REF = re.compile(r"\$\{([A-Za-z0-9_]+)\}")
CLASS_NAME_RE = re.compile(r"^[a-z][a-z0-9_]*(::[a-z][a-z0-9_]*)*$")


@dataclass
class Catalog:
    """Compiled catalog for one node."""

    name: str
    version: int
    environment: str = "production"
    classes: list = field(default_factory=list)
    resources: list = field(default_factory=list)

    def to_resource(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "environment": self.environment,
            "classes": list(self.classes),
            "resources": [dict(r) for r in self.resources],
        }


def _interpolate(value: Any, facts: dict) -> Any:
    if isinstance(value, str):
        def repl(match):
            fact = match.group(1)
            if fact not in facts:
                raise CompileFailure(f"Unknown fact '{fact}' referenced in manifest")
            return str(facts[fact])
        return FACT_REF.sub(repl, value)
    if isinstance(value, list):
        return [_interpolate(v, facts) for v in value]
    if isinstance(value, dict):
        return {k: _interpolate(v, facts) for k, v in value.items()}
    return value


def _mapping(value: Any, source: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise CompileFailure(f"Expected a mapping for {source}, got {type(value).__name__}")
    return value


def _sequence(value: Any, source: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise CompileFailure(f"Expected a list for {source}, got {type(value).__name__}")
    return value


class CatalogCompiler:
    """Compiles catalogs for nodes whose facts are in the node store."""

    def __init__(self, manifestdir: Path, nodes):
        self.manifestdir = Path(manifestdir)
        self.nodes = nodes

    def _load(self, path: Path) -> dict:
        if not path.exists():
            return {}
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise CompileFailure(f"Invalid manifest {path}: {e}") from e
        if not isinstance(data, dict):
            raise CompileFailure(f"Manifest {path} must be a mapping")
        return data

    def _class_manifest(self, name: str) -> dict:
        if not CLASS_NAME_RE.match(name):
            raise CompileFailure(f"Invalid class name: {name!r}")
        path = self.manifestdir / "classes" / (name.replace("::", "/") + ".yaml")
        if not path.exists():
            raise CompileFailure(f"Could not find class {name}")
        return self._load(path)

    def find(self, name: str) -> Optional[Catalog]:
        """Compile the catalog for name.

        Returns:
            Catalog, or None when no facts are cached for the node

        Raises:
            CompileFailure: On manifest errors
        """
        node = self.nodes.find(name)
        if node is None:
            logger.info("No facts found for %s", name)
            return None

        if not isinstance(node, dict):
            raise CompileFailure(f"Node data for {name} must be a mapping")
        facts = node.get("facts", {}) or {}
        if not isinstance(facts, dict):
            raise CompileFailure(f"Facts for {name} must be a mapping")
        facts = dict(facts)
        facts.setdefault("clientcert", name)
        site = self._load(self.manifestdir / "site.yaml")
        default = _mapping(site.get("default"), "site default")
        nodes = _mapping(site.get("nodes"), "site nodes")
        node_entry = _mapping(nodes.get(name), f"node {name}")

        catalog = Catalog(
            name=name,
            version=int(time.time()),
            environment=node.get("environment", "production"),
        )
        seen: set[tuple[str, str]] = set()

        def add_resources(resources, source):
            for resource in _sequence(resources, source):
                if not isinstance(resource, dict) or "type" not in resource or "title" not in resource:
                    raise CompileFailure(f"Malformed resource in {source}: {resource!r}")
                rtype = str(resource["type"]).lower()
                title = str(_interpolate(resource["title"], facts))
                if (rtype, title) in seen:
                    raise CompileFailure(f"Duplicate declaration: {rtype}[{title}] in {source}")
                seen.add((rtype, title))
                catalog.resources.append({
                    "type": rtype,
                    "title": title,
                    "parameters": _interpolate(resource.get("parameters", {}) or {}, facts),
                })

        def include(class_name):
            if not isinstance(class_name, str):
                raise CompileFailure(f"Invalid class name: {class_name!r}")
            if class_name in catalog.classes:
                return
            catalog.classes.append(class_name)
            manifest = self._class_manifest(class_name)
            for included in _sequence(manifest.get("include"), f"class {class_name} include"):
                include(included)
            add_resources(manifest.get("resources"), f"class {class_name}")

        add_resources(default.get("resources"), "site default")
        add_resources(node_entry.get("resources"), f"node {name}")
        for class_name in (
            _sequence(default.get("classes"), "site default classes")
            + _sequence(node_entry.get("classes"), f"node {name} classes")
            + _sequence(node.get("classes"), f"cached classes for {name}")
        ):
            include(class_name)

        logger.info("Compiled catalog for %s with %d resources", name, len(catalog.resources))
        return catalog
