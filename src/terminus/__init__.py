"""Terminus wiring: which store backs each data kind.

Bindings are fixed (not configurable):
- node: memory, cached in YAML
- file_content, file_metadata: file server
- file_bucket: file store

Every data kind the composed handlers consume must be bound before the
server starts; a missing binding is a setup failure.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from common import SetupFailure
from terminus.stores import (
    CachedStore,
    FileBucketStore,
    FileServerStore,
    MemoryStore,
    NotFoundError,
    StoreError,
    YamlStore,
)

logger = logging.getLogger(__name__)


class DataKind(enum.Enum):
    NODE = "node"
    FILE_CONTENT = "file_content"
    FILE_METADATA = "file_metadata"
    FILE_BUCKET = "file_bucket"


@dataclass(frozen=True)
class Binding:
    """Store ids bound to one data kind."""

    terminus: str
    cache: Optional[str] = None


class TerminusBinding:
    """Mapping from data kind to its backing store."""

    def __init__(self, settings):
        self.settings = settings
        self.bindings: dict[DataKind, Binding] = {}
        self._stores: dict[DataKind, object] = {}

    def _build(self, kind: DataKind, store_id: str):
        if store_id == "memory":
            return MemoryStore()
        if store_id == "yaml":
            return YamlStore(self.settings.yamldir / kind.value)
        if store_id == "file_server":
            return FileServerStore(self.settings.fileserver)
        if store_id == "file":
            return FileBucketStore(self.settings.bucketdir)
        raise SetupFailure(f"Unknown terminus '{store_id}' for {kind.value}", code="E303")

    def bind(self, kind: DataKind, store_id: str, cache: Optional[str] = None):
        """Bind a data kind to a store, optionally behind a cache store.

        Rebinding a kind replaces the previous binding.
        """
        store = self._build(kind, store_id)
        if cache is not None:
            store = CachedStore(store, self._build(kind, cache))
        self.bindings[kind] = Binding(store_id, cache)
        self._stores[kind] = store
        logger.debug("Bound %s to %s", kind.value, getattr(store, "store_id", store_id))

    def store(self, kind: DataKind):
        """Return the store bound to kind.

        Raises:
            SetupFailure: If the kind has no binding
        """
        try:
            return self._stores[kind]
        except KeyError:
            raise SetupFailure(f"No terminus bound for {kind.value}", code="E303") from None

    def require(self, kinds):
        """Check that every kind has a binding."""
        missing = sorted(k.value for k in kinds if k not in self._stores)
        if missing:
            raise SetupFailure(f"No terminus bound for {', '.join(missing)}", code="E303")

    def __contains__(self, kind: DataKind) -> bool:
        return kind in self._stores


def wire(role, settings) -> TerminusBinding:
    """Bind every data kind to its store.

    The bindings do not depend on the CA role today; the role is taken so
    wiring happens after negotiation and can vary with it.
    """
    bindings = TerminusBinding(settings)
    bindings.bind(DataKind.NODE, "memory", cache="yaml")
    bindings.bind(DataKind.FILE_CONTENT, "file_server")
    bindings.bind(DataKind.FILE_METADATA, "file_server")
    bindings.bind(DataKind.FILE_BUCKET, "file")
    logger.debug("Terminuses wired for CA role %s", role.value)
    return bindings


__all__ = [
    "DataKind",
    "Binding",
    "TerminusBinding",
    "wire",
    "StoreError",
    "NotFoundError",
]
