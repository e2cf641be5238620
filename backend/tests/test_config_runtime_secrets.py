from __future__ import annotations

import os

from motalert_web.config import Settings, get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_defaults_to_stub_transports_and_inmemory_store() -> None:
    previous = {
        "EMAIL_SENDER_TYPE": _set_env("EMAIL_SENDER_TYPE", None),
        "SMS_SENDER_TYPE": _set_env("SMS_SENDER_TYPE", None),
        "REMINDER_STORE_BACKEND": _set_env("REMINDER_STORE_BACKEND", None),
        "DEDUP_WINDOW_HOURS": _set_env("DEDUP_WINDOW_HOURS", None),
        "SWEEP_MAX_WORKERS": _set_env("SWEEP_MAX_WORKERS", None),
    }
    try:
        settings = get_settings()
        assert settings.email_sender_type == "stub"
        assert settings.sms_sender_type == "stub"
        assert settings.reminder_store_backend == "inmemory"
        assert settings.dedup_window_hours == 24
        assert settings.sweep_max_workers == 4
        assert settings.live_transports() == ()
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_invalid_numeric_and_mode_values_fall_back_to_defaults() -> None:
    previous = {
        "SWEEP_MAX_WORKERS": _set_env("SWEEP_MAX_WORKERS", "0"),
        "DEDUP_WINDOW_HOURS": _set_env("DEDUP_WINDOW_HOURS", "soon"),
        "RUNTIME_SECRET_GUARD_MODE": _set_env("RUNTIME_SECRET_GUARD_MODE", "LOUD"),
        "REMINDER_ALLOW_NOW_OVERRIDE": _set_env("REMINDER_ALLOW_NOW_OVERRIDE", "yes"),
        "OPS_SUMMARY_EMAIL": _set_env("OPS_SUMMARY_EMAIL", "   "),
    }
    try:
        settings = get_settings()
        assert settings.sweep_max_workers == 4
        assert settings.dedup_window_hours == 24
        assert settings.runtime_secret_guard_mode == "warn"
        assert settings.reminder_allow_now_override is True
        assert settings.ops_summary_email is None
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_stub_transports_need_no_secrets() -> None:
    assert runtime_secret_issues(Settings()) == ()


def test_live_transports_require_credentials_and_cron_secret() -> None:
    issues = runtime_secret_issues(
        Settings(
            email_sender_type="sendgrid",
            sms_sender_type="twilio",
            twilio_account_sid="AC123",
        )
    )

    assert "SENDGRID_API_KEY is required when EMAIL_SENDER_TYPE=sendgrid" in issues
    assert any(
        "TWILIO_AUTH_TOKEN" in issue and "TWILIO_FROM_NUMBER" in issue and "TWILIO_ACCOUNT_SID" not in issue
        for issue in issues
    )
    assert any("CRON_SECRET" in issue for issue in issues)


def test_postgres_backend_requires_database_url() -> None:
    issues = runtime_secret_issues(Settings(reminder_store_backend="postgres"))

    assert issues == ("DATABASE_URL is required when REMINDER_STORE_BACKEND=postgres",)
