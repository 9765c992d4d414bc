from __future__ import annotations

import pytest

from keel.anchors import AnchorManager
from keel.blob_store import BlobStore
from keel.config import KeelConfig
from keel.state_db import StateStore


@pytest.fixture(autouse=True)
def _isolate_home(monkeypatch: pytest.MonkeyPatch, tmp_path):
    """Keep the developer's tokens and caches out of the tests."""

    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.delenv("HF_TOKEN", raising=False)
    monkeypatch.delenv("HUGGING_FACE_HUB_TOKEN", raising=False)
    monkeypatch.delenv("HF_HOME", raising=False)
    monkeypatch.delenv("XDG_CACHE_HOME", raising=False)
    monkeypatch.delenv("KEEL_LOG_LEVEL", raising=False)


@pytest.fixture
def project(tmp_path):
    """A small project tree with an ignored .git directory."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "f.txt").write_text("x")
    (root / "README.md").write_text("# demo\n")
    (root / "src").mkdir()
    (root / "src" / "main.py").write_text("print('hello')\n")
    (root / ".git").mkdir()
    (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    return root.resolve()


@pytest.fixture
def config(project):
    return KeelConfig(project_root=str(project), debounce_ms=50)


@pytest.fixture
def store(config):
    return StateStore(config.state_db_path)


@pytest.fixture
def blobs(config):
    return BlobStore(config.objects_path, chunk_size=4)


@pytest.fixture
def manager(config, store):
    return AnchorManager(config, store=store)
