import pytest

from config import get_settings


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.setenv("SPENDWISE_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("SPENDWISE_DATABASE_URL", f"sqlite:///{tmp_path / 'spendwise.db'}")
    monkeypatch.setenv("SPENDWISE_ENV", "test")
    monkeypatch.setenv("SPENDWISE_TIMEZONE", "UTC")
    monkeypatch.setenv("SPENDWISE_SECRET_KEY", "test-secret")
    for name in ("SPENDWISE_SMTP_HOST", "SPENDWISE_SMTP_USER", "SPENDWISE_SMTP_PASSWORD"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()
