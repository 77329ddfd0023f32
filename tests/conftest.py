"""Shared pytest fixtures for confmaster tests."""

import logging
import shutil
import signal
import sys
from pathlib import Path

import pytest
import yaml

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import Settings  # noqa: E402


def pytest_collection_modifyitems(config, items):
    """Skip tests marked with requires_openssl when openssl is not installed."""
    if shutil.which("openssl"):
        return
    skip_marker = pytest.mark.skip(reason="requires the openssl binary")
    for item in items:
        if "requires_openssl" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temporary vardir.

    Uses 2048-bit keys and short TTLs to keep openssl fast.
    """
    files = tmp_path / "files"
    files.mkdir()
    return Settings(
        vardir=tmp_path / "var",
        certname="master.test",
        key_size=2048,
        ca_ttl_days=30,
        cert_ttl_days=30,
        fileserver={"files": files},
        bind="127.0.0.1",
        port=0,
    )


@pytest.fixture
def manifests(settings):
    """Create a minimal manifest tree.

    - site.yaml: default class 'base', node web01 gets class 'nginx'
    - classes/base.yaml: /etc/motd with ${hostname}
    - classes/nginx.yaml: includes base, package + service
    """
    root = settings.manifestdir
    (root / "classes").mkdir(parents=True)

    site = {
        "default": {"classes": ["base"]},
        "nodes": {
            "web01": {
                "classes": ["nginx"],
                "resources": [
                    {"type": "File", "title": "/etc/role", "parameters": {"content": "web"}},
                ],
            },
        },
    }
    (root / "site.yaml").write_text(yaml.safe_dump(site))

    base = {
        "resources": [
            {
                "type": "file",
                "title": "/etc/motd",
                "parameters": {"content": "Welcome to ${hostname}"},
            },
        ],
    }
    (root / "classes" / "base.yaml").write_text(yaml.safe_dump(base))

    nginx = {
        "include": ["base"],
        "resources": [
            {"type": "package", "title": "nginx", "parameters": {"ensure": "installed"}},
            {"type": "service", "title": "nginx", "parameters": {"ensure": "running"}},
        ],
    }
    (root / "classes" / "nginx.yaml").write_text(yaml.safe_dump(nginx))
    return root


@pytest.fixture
def node_facts(settings):
    """Cache facts for web01 in the YAML node store."""
    directory = settings.yamldir / "node"
    directory.mkdir(parents=True)
    record = {
        "name": "web01",
        "facts": {"hostname": "web01", "osfamily": "Debian"},
        "classes": [],
        "environment": "production",
    }
    (directory / "web01.yaml").write_text(yaml.safe_dump(record))
    return record


@pytest.fixture
def config_file(tmp_path):
    """Write a master.yaml into tmp_path and return its path."""
    def _write(data: dict) -> Path:
        path = tmp_path / "master.yaml"
        path.write_text(yaml.safe_dump(data))
        return path
    return _write


@pytest.fixture
def restore_signals():
    """Put back any signal handlers a test installs."""
    signums = (signal.SIGHUP, signal.SIGINT, signal.SIGTERM, signal.SIGUSR2)
    saved = {s: signal.getsignal(s) for s in signums}
    yield
    for signum, handler in saved.items():
        signal.signal(signum, handler)


@pytest.fixture
def isolated_logging():
    """Remove root logger handlers and level changes made by a test."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
