"""Master configuration management.

Settings are loaded from a single YAML file (master.yaml):
- directory layout (vardir, ssldir, cadir, yamldir, ...)
- listener (bind, port)
- certificate authority (ca, ca_only, autosign, TTLs)
- process (user, group, daemonize)
- file server mount points

Resolution order for the file:
1. --config PATH
2. CONFMASTER_CONFIG environment variable
3. /etc/confmaster/master.yaml

Paths that are not set explicitly are derived from vardir and ssldir.
"""

import os
import socket
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

DEFAULT_CONFIG_FILE = Path("/etc/confmaster/master.yaml")
DEFAULT_VARDIR = Path("/var/lib/confmaster")
DEFAULT_PORT = 8140
DEFAULT_BIND = "0.0.0.0"

# Keys derived from vardir/ssldir when not set in the file
_DERIVED_PATHS = {
    "ssldir": ("vardir", "ssl"),
    "cadir": ("ssldir", "ca"),
    "yamldir": ("vardir", "yaml"),
    "reportdir": ("vardir", "reports"),
    "bucketdir": ("vardir", "bucket"),
    "rundir": ("vardir", "run"),
    "logdir": ("vardir", "log"),
    "manifestdir": ("vardir", "manifests"),
}


class ConfigError(Exception):
    """Configuration error."""


def _default_certname() -> str:
    return socket.getfqdn().lower()


@dataclass
class Settings:
    """Runtime settings for the master.

    Attributes mirror the keys accepted in master.yaml. Directory keys left
    as None are filled in by resolve_paths().
    """
    vardir: Path = DEFAULT_VARDIR
    ssldir: Optional[Path] = None
    cadir: Optional[Path] = None
    yamldir: Optional[Path] = None
    reportdir: Optional[Path] = None
    bucketdir: Optional[Path] = None
    rundir: Optional[Path] = None
    logdir: Optional[Path] = None
    manifestdir: Optional[Path] = None
    fileserver: dict = field(default_factory=dict)
    bind: str = DEFAULT_BIND
    port: int = DEFAULT_PORT
    ca: bool = True
    ca_only: bool = False
    autosign: bool = False
    certname: str = field(default_factory=_default_certname)
    ca_name: str = ""
    ca_ttl_days: int = 1825
    cert_ttl_days: int = 1825
    key_size: int = 4096
    user: str = "confmaster"
    group: str = "confmaster"
    daemonize: bool = True
    config_file: Optional[Path] = None

    def __post_init__(self):
        self.resolve_paths()

    def resolve_paths(self):
        """Coerce path settings and derive unset directories."""
        self.vardir = Path(self.vardir)
        for key, (base, leaf) in _DERIVED_PATHS.items():
            value = getattr(self, key)
            if value is None:
                setattr(self, key, Path(getattr(self, base)) / leaf)
            else:
                setattr(self, key, Path(value))
        self.fileserver = {name: Path(path) for name, path in self.fileserver.items()}
        if not self.ca_name:
            self.ca_name = f"Confmaster CA: {self.certname}"

    @property
    def pid_file(self) -> Path:
        return self.rundir / "master.pid"

    def to_dict(self) -> dict:
        """Return settings as plain values (for printing)."""
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Path):
                value = str(value)
            elif isinstance(value, dict):
                value = {k: str(v) for k, v in value.items()}
            result[f.name] = value
        return result

    def print_configs(self, names: list[str], out=None) -> bool:
        """Print requested settings, one per line.

        A single name prints the bare value; several print "name = value".
        'all' prints every setting.

        Returns:
            True if every requested name is a known setting.
        """
        out = out or sys.stdout
        values = self.to_dict()
        if names == ["all"]:
            names = sorted(values)

        ok = True
        for name in names:
            if name not in values:
                print(f"Unknown setting: {name}", file=sys.stderr)
                ok = False
                continue
            if len(names) == 1:
                print(values[name], file=out)
            else:
                print(f"{name} = {values[name]}", file=out)
        return ok


def discover_config_path(explicit: Optional[Path] = None) -> Path:
    """Find the configuration file path.

    Does not check that the file exists; a missing file means defaults.
    """
    if explicit:
        return Path(explicit)
    if env_path := os.environ.get("CONFMASTER_CONFIG"):
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML mapping file."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping in {path}")
    return data


_PATH_TYPES = (Path, Optional[Path])

# Lower bounds for integer settings
_INT_MINIMUMS = {
    "port": 0,
    "ca_ttl_days": 1,
    "cert_ttl_days": 1,
    "key_size": 1024,
}


def _type_name(expected) -> str:
    if expected in _PATH_TYPES:
        return "a path"
    return {bool: "true or false", int: "an integer", str: "a string"}.get(expected, "a mapping")


def _check_types(data: dict, path: Path):
    """Check file values against the Settings field types.

    Values are not coerced: `ca: "false"` and `port: "8140"` are errors.

    Raises:
        ConfigError: On the first value of the wrong type or out of range
    """
    for f in fields(Settings):
        if f.name not in data:
            continue
        value = data[f.name]
        expected = f.type
        if expected in _PATH_TYPES:
            ok = isinstance(value, str) or (value is None and expected is not Path)
        elif expected is bool:
            ok = isinstance(value, bool)
        elif expected is int:
            ok = isinstance(value, int) and not isinstance(value, bool)
        elif expected is str:
            ok = isinstance(value, str)
        else:
            ok = isinstance(value, dict) and all(isinstance(v, str) for v in value.values())
        if not ok:
            raise ConfigError(
                f"Invalid value for {f.name} in {path}: expected {_type_name(expected)}, got {value!r}"
            )
        minimum = _INT_MINIMUMS.get(f.name)
        if minimum is not None and value < minimum:
            raise ConfigError(f"Invalid value for {f.name} in {path}: must be at least {minimum}")
    if "port" in data and data["port"] > 65535:
        raise ConfigError(f"Invalid value for port in {path}: must be at most 65535")


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Load settings from the discovered configuration file.

    Args:
        config_path: Explicit file path (--config). Must exist if given.

    Returns:
        Settings with derived paths resolved

    Raises:
        ConfigError: If the file is invalid or contains unknown keys
    """
    path = discover_config_path(config_path)
    if not path.exists():
        if config_path:
            raise ConfigError(f"Config file not found: {path}")
        return Settings()

    data = _parse_yaml(path)
    known = {f.name for f in fields(Settings)} - {"config_file"}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown settings in {path}: {', '.join(unknown)}")

    if "fileserver" in data and not isinstance(data["fileserver"], dict):
        raise ConfigError("fileserver must be a mapping of mount name to directory")
    _check_types(data, path)

    try:
        return Settings(config_file=path, **data)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid settings in {path}: {e}") from e
