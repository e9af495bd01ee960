from __future__ import annotations

import json
import stat

import pytest

from cloudron_cli.config import DEFAULT_APPSTORE_ORIGIN, Config, Session
from cloudron_cli.errors import NotLoggedInError


def test_save_and_load_round_trip(config):
    config.provider = "digitalocean"
    config.set_appstore_token("store-token")
    config.add_build("io.example.app", "b1")
    config.update_build("io.example.app", "b1", "registry/app:b1")

    loaded = Config.load(config.path)

    assert loaded.session == config.session
    assert loaded.appstore.token == "store-token"
    assert loaded.provider == "digitalocean"
    assert loaded.latest_build("io.example.app").docker_image == "registry/app:b1"
    assert stat.S_IMODE(config.path.stat().st_mode) == 0o600


def test_file_layout(config):
    config.add_build("io.example.app", "b1")
    data = json.loads(config.path.read_text())

    assert data["cloudron"] == "example.com"
    assert data["apiEndpoint"] == "my.example.com"
    assert data["token"] == "token-1"
    assert data["apps"]["io.example.app"][0]["id"] == "b1"
    assert "dockerImage" not in data["apps"]["io.example.app"][0]


def test_builds_are_kept_in_order(config):
    for build_id in ("b1", "b2", "b3"):
        config.add_build("io.example.app", build_id)
    config.update_build("io.example.app", "b2", "registry/app:b2")

    builds = config.list_builds("io.example.app")
    assert [build.id for build in builds] == ["b1", "b2", "b3"]
    assert [build.docker_image for build in builds] == [None, "registry/app:b2", None]
    assert config.latest_build("io.example.app").id == "b3"
    assert config.latest_build("io.other") is None


def test_clear_forgets_session_but_keeps_builds(config):
    config.add_build("io.example.app", "b1")
    config.clear()

    loaded = Config.load(config.path)
    assert not loaded.session.is_logged_in
    assert loaded.latest_build("io.example.app").id == "b1"
    with pytest.raises(NotLoggedInError):
        loaded.ensure_logged_in()


def test_missing_file_loads_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("CLOUDRON_APPSTORE_ORIGIN", raising=False)
    monkeypatch.delenv("CLOUDRON_POLL_INTERVAL", raising=False)
    monkeypatch.delenv("CLOUDRON_INSECURE", raising=False)
    config = Config.load(tmp_path / "missing.json")

    assert config.session == Session()
    assert config.appstore.origin == DEFAULT_APPSTORE_ORIGIN
    assert config.builds == {}
    assert config.verify_tls


def test_environment_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("CLOUDRON_CONFIG", str(tmp_path / "env.json"))
    monkeypatch.setenv("CLOUDRON_APPSTORE_ORIGIN", "https://store.example.com")
    monkeypatch.setenv("CLOUDRON_POLL_INTERVAL", "2")
    monkeypatch.setenv("CLOUDRON_INSECURE", "true")

    config = Config.load()

    assert config.path == tmp_path / "env.json"
    assert config.appstore.url("/api/v1/login") == "https://store.example.com/api/v1/login"
    assert config.poll_interval == 2.0
    assert not config.verify_tls


def test_session_url_requires_endpoint():
    with pytest.raises(NotLoggedInError):
        Session().url("/api/v1/apps")
