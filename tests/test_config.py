from datetime import datetime, timezone

import pytest

from clinic_sync.config import DEFAULT_API_BASE_URL, SyncSettings, get_sync_settings
from clinic_sync.time_utils import coerce_revision, ensure_utc


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_sync_settings.cache_clear()
    yield
    get_sync_settings.cache_clear()


def test_defaults_without_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "CLINIC_SYNC_API_BASE_URL",
        "CLINIC_SYNC_SOCKET_URL",
        "CLINIC_SYNC_TENANT_ID",
        "CLINIC_SYNC_HTTP_TIMEOUT",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = get_sync_settings()

    assert settings.api_base_url == DEFAULT_API_BASE_URL
    assert settings.push_enabled is False
    assert settings.resolved_socket_url == "http://localhost:3000"
    assert settings.http_timeout == 10.0
    assert settings.log_level == "INFO"


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLINIC_SYNC_API_BASE_URL", "https://clinic.example/api/")
    monkeypatch.setenv("CLINIC_SYNC_SOCKET_URL", "wss://push.clinic.example")
    monkeypatch.setenv("CLINIC_SYNC_TENANT_ID", "tenant-9")
    monkeypatch.setenv("CLINIC_SYNC_HTTP_TIMEOUT", "2.5")
    monkeypatch.setenv("CLINIC_SYNC_NOTIFICATION_HISTORY", "5")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = get_sync_settings()

    assert settings.api_base_url == "https://clinic.example/api"
    assert settings.push_enabled is True
    assert settings.resolved_socket_url == "wss://push.clinic.example"
    assert settings.tenant_id == "tenant-9"
    assert settings.http_timeout == 2.5
    assert settings.notification_history == 5
    assert settings.log_level == "DEBUG"


def test_malformed_numbers_name_the_variable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLINIC_SYNC_NOTIFICATION_HISTORY", "many")
    with pytest.raises(ValueError, match="CLINIC_SYNC_NOTIFICATION_HISTORY"):
        get_sync_settings()


def test_settings_are_immutable() -> None:
    settings = SyncSettings()
    with pytest.raises(AttributeError):
        settings.tenant_id = "other"  # type: ignore[misc]


def test_coerce_revision_variants() -> None:
    assert coerce_revision(3) == 3.0
    assert coerce_revision("4") == 4.0
    assert coerce_revision(True) is None
    assert coerce_revision("not a time") is None
    stamp = datetime(2024, 5, 1, tzinfo=timezone.utc)
    assert coerce_revision("2024-05-01T00:00:00Z") == stamp.timestamp()
    assert coerce_revision(datetime(2024, 5, 1)) == stamp.timestamp()
    assert ensure_utc(datetime(2024, 5, 1)).tzinfo is timezone.utc
