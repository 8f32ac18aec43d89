import os


class Settings:
    def __init__(self):
        self.app_name = "School Receivables"
        self.api_version = "1.0.0"
        self.environment = os.getenv("ENVIRONMENT", "development")
        self.secret_key = os.getenv("SECRET_KEY", "CHANGE_ME")
        self.SECRET_KEY = self.secret_key
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./receivables.db")
        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.currency = os.getenv("CURRENCY", "COP")
        self.invoice_due_days = int(os.getenv("INVOICE_DUE_DAYS", "30"))
        self.invoice_number_prefix = os.getenv("INVOICE_NUMBER_PREFIX", "INV")
        self.due_soon_days = int(os.getenv("DUE_SOON_DAYS", "7"))


_settings_instance = None


def get_settings():
    """Return a singleton Settings instance."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance


def reset_settings():
    """Drop the cached instance so the next call re-reads the environment."""
    global _settings_instance
    _settings_instance = None
