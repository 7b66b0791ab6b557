"""Tests for StoreConfig loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from exam_sync_storage.exceptions import ValidationError
from exam_sync_storage.storage import CosmosAuthMethod, StoreConfig


class TestDefaults:
    def test_defaults(self) -> None:
        config = StoreConfig()

        assert config.cosmos_auth_method == CosmosAuthMethod.DEFAULT_CREDENTIAL
        assert config.cosmos_database == "exam-db"
        assert config.max_replay_attempts == 5
        assert config.cache_path == Path.home() / ".exam-sync" / "cache"

    def test_invalid_replay_budget(self) -> None:
        with pytest.raises(ValidationError):
            StoreConfig(max_replay_attempts=0)

    def test_invalid_poll_interval(self) -> None:
        with pytest.raises(ValidationError):
            StoreConfig(subscription_poll_interval=0)


class TestFromEnvironment:
    def test_reads_variables(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """Test every documented variable is honoured."""
        monkeypatch.setenv("EXAM_SYNC_DEVICE_ID", "lab-pc-07")
        monkeypatch.setenv("EXAM_SYNC_LOCAL_PATH", str(tmp_path))
        monkeypatch.setenv("EXAM_SYNC_COSMOS_ENDPOINT", "https://exams.documents.azure.com:443/")
        monkeypatch.setenv("EXAM_SYNC_COSMOS_AUTH_METHOD", "KEY")
        monkeypatch.setenv("EXAM_SYNC_COSMOS_KEY", "secret")
        monkeypatch.setenv("EXAM_SYNC_MAX_REPLAY_ATTEMPTS", "8")
        monkeypatch.setenv("EXAM_SYNC_POLL_INTERVAL", "0.5")

        config = StoreConfig.from_environment()

        assert config.device_id == "lab-pc-07"
        assert config.cache_path == tmp_path
        assert config.cosmos_auth_method == CosmosAuthMethod.KEY
        assert config.cosmos_key == "secret"
        assert config.max_replay_attempts == 8
        assert config.subscription_poll_interval == 0.5

    def test_unknown_auth_method_falls_back(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("EXAM_SYNC_COSMOS_AUTH_METHOD", "carrier-pigeon")

        config = StoreConfig.from_environment()

        assert config.cosmos_auth_method == CosmosAuthMethod.DEFAULT_CREDENTIAL


class TestFromFile:
    def test_reads_storage_section(self, tmp_path: Path) -> None:
        """Test known keys become fields and unknown keys land in options."""
        settings = tmp_path / "settings.yaml"
        settings.write_text(
            "storage:\n"
            "  device_id: lab-pc-07\n"
            "  cosmos_endpoint: https://exams.documents.azure.com:443/\n"
            "  cosmos_auth_method: managed_identity\n"
            "  max_replay_attempts: 8\n"
            "  theme: dark\n",
            encoding="utf-8",
        )

        config = StoreConfig.from_file(settings)

        assert config.device_id == "lab-pc-07"
        assert config.cosmos_auth_method == CosmosAuthMethod.MANAGED_IDENTITY
        assert config.max_replay_attempts == 8
        assert config.options == {"theme": "dark"}

    def test_empty_file_gives_defaults(self, tmp_path: Path) -> None:
        settings = tmp_path / "settings.yaml"
        settings.write_text("", encoding="utf-8")

        assert StoreConfig.from_file(settings) == StoreConfig()

    def test_invalid_values_raise(self, tmp_path: Path) -> None:
        settings = tmp_path / "settings.yaml"
        settings.write_text("storage:\n  max_replay_attempts: 0\n", encoding="utf-8")

        with pytest.raises(ValidationError):
            StoreConfig.from_file(settings)
