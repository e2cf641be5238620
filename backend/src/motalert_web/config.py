from __future__ import annotations

import os
from dataclasses import dataclass


class ConfigurationError(RuntimeError):
    """Raised when the runtime is missing something it cannot run a sweep without."""


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int, *, minimum: int = 0) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _as_optional(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


@dataclass(frozen=True)
class Settings:
    app_name: str = "MOT Alert Reminders"
    api_prefix: str = "/api/v1"
    reminder_store_backend: str = "inmemory"
    database_url: str = ""
    email_sender_type: str = "stub"
    email_from_address: str = "MOT Alert <noreply@mot-alert.com>"
    sendgrid_api_key: str = ""
    sms_sender_type: str = "stub"
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    transport_timeout_seconds: int = 30
    dedup_window_hours: int = 24
    retry_max_age_hours: int = 24
    pending_stale_minutes: int = 15
    sweep_max_workers: int = 4
    sweep_deadline_seconds: int = 300
    reminder_allow_now_override: bool = False
    cron_secret: str = ""
    ops_summary_email: str | None = None
    runtime_secret_guard_mode: str = "warn"

    def live_transports(self) -> tuple[str, ...]:
        live: list[str] = []
        if self.email_sender_type.strip().lower() == "sendgrid":
            live.append("sendgrid")
        if self.sms_sender_type.strip().lower() == "twilio":
            live.append("twilio")
        return tuple(live)


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("MOTALERT_APP_NAME", "MOT Alert Reminders"),
        api_prefix=os.getenv("API_PREFIX", "/api/v1"),
        reminder_store_backend=os.getenv("REMINDER_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        email_sender_type=os.getenv("EMAIL_SENDER_TYPE", "stub"),
        email_from_address=os.getenv("EMAIL_FROM_ADDRESS", "MOT Alert <noreply@mot-alert.com>"),
        sendgrid_api_key=os.getenv("SENDGRID_API_KEY", ""),
        sms_sender_type=os.getenv("SMS_SENDER_TYPE", "stub"),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_from_number=os.getenv("TWILIO_FROM_NUMBER", ""),
        transport_timeout_seconds=_as_int(os.getenv("TRANSPORT_TIMEOUT_SECONDS"), 30, minimum=1),
        dedup_window_hours=_as_int(os.getenv("DEDUP_WINDOW_HOURS"), 24, minimum=1),
        retry_max_age_hours=_as_int(os.getenv("RETRY_MAX_AGE_HOURS"), 24, minimum=1),
        pending_stale_minutes=_as_int(os.getenv("PENDING_STALE_MINUTES"), 15, minimum=1),
        sweep_max_workers=_as_int(os.getenv("SWEEP_MAX_WORKERS"), 4, minimum=1),
        sweep_deadline_seconds=_as_int(os.getenv("SWEEP_DEADLINE_SECONDS"), 300),
        reminder_allow_now_override=_as_bool(os.getenv("REMINDER_ALLOW_NOW_OVERRIDE"), False),
        cron_secret=os.getenv("CRON_SECRET", ""),
        ops_summary_email=_as_optional(os.getenv("OPS_SUMMARY_EMAIL")),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    backend = settings.reminder_store_backend.strip().lower()
    if backend == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when REMINDER_STORE_BACKEND=postgres")
    if "sendgrid" in settings.live_transports():
        if not settings.sendgrid_api_key.strip():
            issues.append("SENDGRID_API_KEY is required when EMAIL_SENDER_TYPE=sendgrid")
        if not settings.email_from_address.strip():
            issues.append("EMAIL_FROM_ADDRESS is required when EMAIL_SENDER_TYPE=sendgrid")
    if "twilio" in settings.live_transports():
        missing = [
            name
            for name, value in (
                ("TWILIO_ACCOUNT_SID", settings.twilio_account_sid),
                ("TWILIO_AUTH_TOKEN", settings.twilio_auth_token),
                ("TWILIO_FROM_NUMBER", settings.twilio_from_number),
            )
            if not value.strip()
        ]
        if missing:
            issues.append(f"{', '.join(missing)} required when SMS_SENDER_TYPE=twilio")
    if settings.live_transports() and not settings.cron_secret.strip():
        issues.append("CRON_SECRET is empty; live reminder triggers would be unauthenticated")
    return tuple(issues)
