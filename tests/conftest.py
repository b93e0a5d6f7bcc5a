import pytest

from app import auth, db, email_utils
from app.usage_log import usage_logger

EMAIL_ENV_KEYS = [
    "REFTRACK_EMAIL_TRANSPORT",
    "REFTRACK_SMTP_HOST", "SMTP_HOST",
    "REFTRACK_SMTP_USER", "SMTP_USER",
    "REFTRACK_SMTP_PASS", "SMTP_PASS",
    "REFTRACK_SMTP_PORT", "SMTP_PORT",
    "REFTRACK_SMTP_TLS", "SMTP_TLS",
    "REFTRACK_SMTP_SSL", "SMTP_SSL",
    "REFTRACK_SMTP_FROM", "SMTP_FROM",
    "REFTRACK_SMTP_FROM_NAME", "SMTP_FROM_NAME",
    "REFTRACK_SMTP_FROM_EMAIL", "SMTP_FROM_EMAIL",
    "REFTRACK_SMTP_TIMEOUT", "SMTP_TIMEOUT",
    "REFTRACK_MAILGUN_API_KEY", "MAILGUN_API_KEY",
    "REFTRACK_MAILGUN_DOMAIN", "MAILGUN_DOMAIN",
    "REFTRACK_MAILGUN_REGION", "MAILGUN_REGION",
    "REFTRACK_MAILGUN_FROM", "MAILGUN_FROM",
]


@pytest.fixture(autouse=True)
def isolated_data(monkeypatch, tmp_path):
    """Point every on-disk store at a per-test temp directory."""
    monkeypatch.setattr(db, "DB_PATH", str(tmp_path / "referraltracker.sqlite"))
    monkeypatch.setattr(auth, "USERS_PATH", str(tmp_path / "users.json"))
    monkeypatch.setattr(email_utils, "SMTP_CONFIG_PATH", str(tmp_path / "smtp.json"))
    monkeypatch.setattr(usage_logger, "log_dir", str(tmp_path / "usage_logs"))
    monkeypatch.setenv("REFTRACK_USER_STORE_PATH", str(tmp_path / "user_prefs.json"))
    for key in EMAIL_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    auth.SESSIONS.clear()
    yield tmp_path
    auth.SESSIONS.clear()
