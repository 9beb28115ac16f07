from pathlib import Path

import pytest
from pydantic import ValidationError

from lobby.settings import RoomSettings


class TestRoomSettings:
    def test_defaults(self, monkeypatch):
        for name in (
            "ROOMS_DATABASE_URL",
            "ROOMS_ASSOCIATION_PATH",
            "ROOMS_JOIN_RETRY_DELAY_SECONDS",
            "ROOMS_AUTH_TIMEOUT_SECONDS",
            "ROOMS_REQUEST_TIMEOUT_SECONDS",
        ):
            monkeypatch.delenv(name, raising=False)
        settings = RoomSettings()
        assert settings.rooms_root == "rooms"
        assert settings.join_max_attempts == 3
        assert settings.join_retry_delay_seconds == 0.5
        assert settings.transaction_max_reruns == 25
        assert settings.turn_duration_seconds == 60.0
        assert settings.turn_sync_interval_seconds == 2.0
        assert settings.database_url is None
        assert settings.association_path is None
        assert settings.auth_timeout_seconds == 10.0
        assert settings.request_timeout_seconds == 10.0

    def test_test_environment_file_is_applied(self, settings):
        assert settings.join_retry_delay_seconds == 0.01
        assert settings.auth_timeout_seconds == 0.2
        assert settings.request_timeout_seconds == 2.0
        assert settings.turn_sync_interval_seconds == 60.0

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("ROOMS_JOIN_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("ROOMS_ROOMS_ROOT", "lobby/rooms")
        monkeypatch.setenv("ROOMS_ASSOCIATION_PATH", "/tmp/room.json")
        settings = RoomSettings()
        assert settings.join_max_attempts == 5
        assert settings.rooms_root == "lobby/rooms"
        assert settings.association_path == Path("/tmp/room.json")

    def test_database_url_normalized(self, monkeypatch):
        monkeypatch.setenv("ROOMS_DATABASE_URL", " https://example.firebaseio.com/ ")
        monkeypatch.setenv("ROOMS_API_KEY", "key")
        settings = RoomSettings()
        assert settings.database_url == "https://example.firebaseio.com"

    def test_blank_database_url_is_unset(self, monkeypatch):
        monkeypatch.setenv("ROOMS_DATABASE_URL", "   ")
        assert RoomSettings().database_url is None

    def test_database_url_must_be_http(self, monkeypatch):
        monkeypatch.setenv("ROOMS_DATABASE_URL", "ftp://example.com")
        monkeypatch.setenv("ROOMS_API_KEY", "key")
        with pytest.raises(ValidationError, match="database_url"):
            RoomSettings()

    def test_database_url_requires_api_key(self, monkeypatch):
        monkeypatch.delenv("ROOMS_API_KEY", raising=False)
        monkeypatch.setenv("ROOMS_DATABASE_URL", "https://example.firebaseio.com")
        with pytest.raises(ValidationError, match="api_key"):
            RoomSettings()

    def test_join_attempts_must_be_positive(self, monkeypatch):
        monkeypatch.setenv("ROOMS_JOIN_MAX_ATTEMPTS", "0")
        with pytest.raises(ValidationError, match="join_max_attempts"):
            RoomSettings()

    def test_turn_duration_must_be_positive(self):
        with pytest.raises(ValidationError, match="turn_duration_seconds"):
            RoomSettings(turn_duration_seconds=0)
