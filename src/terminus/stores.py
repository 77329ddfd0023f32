"""Backing stores for indirected data kinds.

- MemoryStore: process-local dict
- YamlStore: one YAML document per key under a directory
- FileServerStore: file content and metadata from configured mount points
- FileBucketStore: content-addressed file backups (sha256)
"""

import hashlib
import logging
import os
import stat
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Store operation failed."""


class NotFoundError(StoreError):
    """Requested key does not exist."""


def _safe_key(key: str) -> str:
    key = key.strip()
    if not key or "/" in key or "\\" in key or key.startswith("."):
        raise StoreError(f"Invalid key: {key!r}")
    return key


class MemoryStore:
    """In-memory store, lost on restart."""

    store_id = "memory"

    def __init__(self):
        self._data: dict[str, Any] = {}

    def find(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    def save(self, key: str, value: Any):
        self._data[key] = value

    def destroy(self, key: str):
        self._data.pop(key, None)


class YamlStore:
    """Stores each value as <directory>/<key>.yaml."""

    store_id = "yaml"

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def path_for(self, key: str) -> Path:
        return self.directory / f"{_safe_key(key)}.yaml"

    def find(self, key: str) -> Optional[Any]:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                return yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise StoreError(f"Invalid YAML in {path}: {e}") from e

    def save(self, key: str, value: Any):
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".yaml.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            yaml.safe_dump(value, f, default_flow_style=False, sort_keys=True)
        os.replace(tmp, path)
        logger.debug("Saved %s", path)

    def destroy(self, key: str):
        self.path_for(key).unlink(missing_ok=True)


class CachedStore:
    """A primary store fronted by a cache store.

    Reads hit the cache first and fill it from the primary; writes go to
    both.
    """

    def __init__(self, primary, cache):
        self.primary = primary
        self.cache = cache

    @property
    def store_id(self) -> str:
        return f"{self.primary.store_id}+{self.cache.store_id}"

    def find(self, key: str) -> Optional[Any]:
        value = self.cache.find(key)
        if value is not None:
            return value
        value = self.primary.find(key)
        if value is not None:
            self.cache.save(key, value)
        return value

    def save(self, key: str, value: Any):
        self.primary.save(key, value)
        self.cache.save(key, value)

    def destroy(self, key: str):
        self.primary.destroy(key)
        self.cache.destroy(key)


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


class FileServerStore:
    """Serves file content and metadata from named mount points."""

    store_id = "file_server"

    def __init__(self, mounts: dict):
        self.mounts = {name: Path(path) for name, path in mounts.items()}

    def resolve(self, key: str) -> Path:
        """Map '<mount>/<relative path>' to a path inside the mount.

        Raises:
            NotFoundError: Unknown mount or missing file
            StoreError: Path escapes the mount
        """
        mount, _, relative = key.strip("/").partition("/")
        if mount not in self.mounts:
            raise NotFoundError(f"No such mount point: {mount}")
        root = self.mounts[mount].resolve()
        path = root / relative
        target = path.resolve()
        if target != root and root not in target.parents:
            raise StoreError(f"Path escapes mount {mount}: {relative}")
        if not path.exists():
            raise NotFoundError(f"File not found: {key}")
        return path

    def content(self, key: str) -> bytes:
        path = self.resolve(key)
        if not path.is_file():
            raise StoreError(f"Not a file: {key}")
        return path.read_bytes()

    def metadata(self, key: str) -> dict:
        path = self.resolve(key)
        st = path.lstat()
        if stat.S_ISLNK(st.st_mode):
            ftype = "link"
        elif stat.S_ISDIR(st.st_mode):
            ftype = "directory"
        else:
            ftype = "file"
        result = {
            "path": key,
            "type": ftype,
            "size": st.st_size,
            "mode": oct(stat.S_IMODE(st.st_mode)),
            "mtime": int(st.st_mtime),
        }
        if ftype == "file":
            result["checksum"] = f"{{sha256}}{_sha256_file(path)}"
        elif ftype == "link":
            result["destination"] = os.readlink(path)
        return result


class FileBucketStore:
    """Content-addressed storage for file backups.

    Layout: <directory>/<c0>/<c1>/<sha256>/contents and paths.
    """

    store_id = "file"

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _dir_for(self, checksum: str) -> Path:
        checksum = checksum.lower()
        if len(checksum) != 64 or any(c not in "0123456789abcdef" for c in checksum):
            raise StoreError(f"Invalid sha256 checksum: {checksum!r}")
        return self.directory / checksum[0] / checksum[1] / checksum

    def find(self, checksum: str) -> Optional[bytes]:
        contents = self._dir_for(checksum) / "contents"
        if not contents.exists():
            return None
        return contents.read_bytes()

    def save(self, checksum: str, content: bytes, path: Optional[str] = None) -> str:
        """Store content under its checksum, recording the original path.

        Raises:
            StoreError: If the checksum does not match the content
        """
        actual = hashlib.sha256(content).hexdigest()
        if actual != checksum.lower():
            raise StoreError(f"Checksum mismatch: expected {checksum}, got {actual}")
        bucket = self._dir_for(actual)
        bucket.mkdir(parents=True, exist_ok=True)
        contents = bucket / "contents"
        if not contents.exists():
            contents.write_bytes(content)
            logger.info("Filebucketed %s", actual)
        if path:
            paths_file = bucket / "paths"
            known = paths_file.read_text().splitlines() if paths_file.exists() else []
            if path not in known:
                with open(paths_file, "a", encoding="utf-8") as f:
                    f.write(path + "\n")
        return actual

    def paths(self, checksum: str) -> list[str]:
        paths_file = self._dir_for(checksum) / "paths"
        if not paths_file.exists():
            return []
        return paths_file.read_text().splitlines()
