"""
Warden Configuration, Logging and Manager Tests
"""

import json
import logging
from unittest.mock import AsyncMock

import pytest
import structlog
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from warden.backend.client import BackendClient
from warden.core.config import LogLevel, WardenConfig, get_config, reset_config, set_config
from warden.core.logging import setup_logging
from warden.manager import WardenManager, get_manager, set_manager
from warden.storage.kv import InMemoryKeyValueStore


class TestWardenConfig:
    """Tests for configuration loading."""

    def test_defaults(self):
        """Test the documented defaults."""
        config = WardenConfig()

        assert config.webauthn.challenge_ttl_seconds == 300
        assert config.oauth.authorization_code_ttl_seconds == 600
        assert config.keys.rotation_interval_days == 30
        assert config.keys.rsa_key_size == 2048
        assert config.session.refresh_threshold_seconds == 900
        assert config.session.cookie_name == "session"
        assert config.redis.url is None

    def test_environment_override(self, monkeypatch):
        """Test nested settings can be set from the environment."""
        monkeypatch.setenv("WARDEN_SESSION__REFRESH_THRESHOLD_SECONDS", "600")
        monkeypatch.setenv("WARDEN_REDIS__URL", "redis://cache:6379/0")
        monkeypatch.setenv("WARDEN_LOG_LEVEL", "debug")

        config = WardenConfig()

        assert config.session.refresh_threshold_seconds == 600
        assert config.redis.url == "redis://cache:6379/0"
        assert config.log_level == LogLevel.DEBUG

    def test_from_file(self, tmp_path):
        """Test loading from a JSON file."""
        path = tmp_path / "warden.json"
        path.write_text(json.dumps({"environment": "production", "oauth": {"issuer": "https://auth.example.com"}}))

        config = WardenConfig.from_file(path)

        assert config.environment == "production"
        assert config.oauth.issuer == "https://auth.example.com"

    def test_missing_file(self, tmp_path):
        """Test a missing config file raises."""
        with pytest.raises(FileNotFoundError):
            WardenConfig.from_file(tmp_path / "absent.json")

    def test_global_config(self):
        """Test the global config accessors."""
        config = WardenConfig(environment="staging")
        set_config(config)
        try:
            assert get_config() is config
        finally:
            reset_config()

        assert get_config() is not config
        reset_config()


class TestLogging:
    """Tests for structured logging setup."""

    def test_json_output(self, caplog):
        """Test log events are rendered as JSON with level and logger name."""
        caplog.set_level(logging.INFO)
        setup_logging("info", json_output=True)
        try:
            structlog.get_logger("warden.test").info("challenge_issued", challenge_id="abc")
        finally:
            structlog.reset_defaults()

        event = json.loads(caplog.records[-1].getMessage())
        assert event["event"] == "challenge_issued"
        assert event["challenge_id"] == "abc"
        assert event["level"] == "info"
        assert event["logger"] == "warden.test"


class TestWardenManager:
    """Tests for service wiring and lifecycle."""

    @pytest.fixture
    def backend(self):
        return AsyncMock(spec=BackendClient)

    @pytest.fixture
    def manager(self, backend):
        return WardenManager(config=WardenConfig(), store=InMemoryKeyValueStore(), backend=backend)

    @pytest.mark.asyncio
    async def test_lifecycle(self, manager, backend):
        """Test initialize starts services and shutdown stops them."""
        await manager.initialize()
        try:
            backend.initialize.assert_awaited_once()
            jwks = await manager.authorization_server.jwks()
            assert len(jwks["keys"]) == 1
        finally:
            await manager.shutdown()

        backend.shutdown.assert_awaited_once()

    def test_shared_store(self, manager):
        """Test every stateful service uses the injected store."""
        assert manager.challenges._store is manager.store
        assert manager.codes._store is manager.store
        assert manager.keys._store is manager.store
        assert manager.rate_limiter._store is manager.store

    def test_relying_party(self, manager):
        """Test the relying party follows the request URL."""
        rp = manager.relying_party("https://auth.example.com/webauthn/register/options")

        assert rp.id == "auth.example.com"
        assert rp.name == "Warden"

    def test_install(self, manager):
        """Test installing on an app adds headers and authentication."""
        app = FastAPI()
        manager.install(app)

        @app.get("/whoami")
        async def whoami(request: Request):
            return {"reason": request.state.auth_outcome.reason}

        with TestClient(app) as client:
            response = client.get("/whoami")

        assert response.json() == {"reason": "missing_credentials"}
        assert response.headers["x-frame-options"] == "DENY"
        assert "x-ratelimit-limit" in response.headers

    def test_global_manager(self, manager):
        """Test the global manager accessors."""
        set_manager(manager)
        try:
            assert get_manager() is manager
        finally:
            set_manager(None)
