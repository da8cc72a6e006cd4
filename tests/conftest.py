"""Shared fixtures for dirpush tests."""

from pathlib import Path

import pytest

import dirpush_client
import dirpush_server


@pytest.fixture(autouse=True)
def no_user_config(tmp_path, monkeypatch):
    """Keep ~/.dirpush/*.json out of the tests."""
    monkeypatch.setattr(dirpush_client, "CONFIG_PATH", tmp_path / "no-client.json")
    monkeypatch.setattr(dirpush_server, "CONFIG_PATH", tmp_path / "no-server.json")


@pytest.fixture
def watch_root(tmp_path) -> Path:
    """An empty, resolved watch root."""
    root = (tmp_path / "w").resolve()
    root.mkdir()
    return root


@pytest.fixture
def server_config(tmp_path):
    """Server config whose home is a temporary directory, limited to /mirror."""
    home = tmp_path / "home"
    home.mkdir()
    return dirpush_server.ServerConfig(home=home, limit_dir="/mirror")


@pytest.fixture
def sandbox(server_config) -> Path:
    return server_config.sandbox_root
