from pathlib import Path

import pytest

from gateway_config import DEFAULT_SESSION_TTL, GatewayConfig


def test_defaults():
    config = GatewayConfig()
    assert config.session_ttl_seconds == DEFAULT_SESSION_TTL == 604800
    assert config.session_db_path == config.db_path
    assert config.callback_url == "http://localhost:8080/callback"


def test_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("FRONTEND_ORIGIN", "https://app.example.com/some/path")
    monkeypatch.setenv("OAUTH_CLIENT_ID", "web")
    monkeypatch.setenv("SESSION_TTL_SECONDS", "300")
    monkeypatch.setenv("SERVER_URL", "https://auth.example.com/")
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "users.db"))
    monkeypatch.setenv("SESSION_DATABASE_PATH", str(tmp_path / "sessions.db"))

    config = GatewayConfig.from_env()

    assert config.frontend_origin == "https://app.example.com"
    assert config.frontend_url == "https://app.example.com/"
    assert config.client_id == "web"
    assert config.session_ttl_seconds == 300
    assert config.callback_url == "https://auth.example.com/callback"
    assert config.db_path == tmp_path / "users.db"
    assert config.session_db_path == Path(tmp_path / "sessions.db")


@pytest.mark.parametrize("value", ["0", "-5", "soon"])
def test_rejects_bad_ttl(monkeypatch, value):
    monkeypatch.setenv("SESSION_TTL_SECONDS", value)
    with pytest.raises(ValueError):
        GatewayConfig.from_env()


def test_rejects_relative_frontend_origin():
    with pytest.raises(ValueError):
        GatewayConfig(frontend_origin="app.example.com")
