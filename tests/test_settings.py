from backend.app.core.settings import get_settings, reset_settings


def test_settings_defaults():
    settings = get_settings()
    assert settings.app_name == "School Receivables"
    assert settings.environment == "development"
    assert isinstance(settings.secret_key, str) and settings.secret_key
    assert isinstance(settings.database_url, str) and settings.database_url
    assert settings.invoice_number_prefix == "INV"


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("CURRENCY", "USD")
    monkeypatch.setenv("INVOICE_DUE_DAYS", "15")
    reset_settings()
    try:
        settings = get_settings()
        assert settings.currency == "USD"
        assert settings.invoice_due_days == 15
    finally:
        reset_settings()
