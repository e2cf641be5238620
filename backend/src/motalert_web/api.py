from __future__ import annotations

import hmac
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from .config import ConfigurationError, get_settings
from .formatting import mask_contact_target
from .models import (
    MessageItem,
    ReminderActionRequest,
    ReminderItem,
    ReminderListResponse,
    RetrySummary,
    SweepSummary,
)
from .runtime import ReminderRuntime
from .store import AccountNotFoundError
from .sweeps import SweepInProgressError

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["reminders"])


def get_runtime(request: Request) -> ReminderRuntime:
    return request.app.state.runtime


def _require_cron_secret(request: Request, runtime: ReminderRuntime = Depends(get_runtime)) -> None:
    expected = runtime.settings.cron_secret.strip()
    if not expected:
        return
    token = request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
    if not token or not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(401, "invalid cron secret")


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/reminders", response_model=SweepSummary | RetrySummary, dependencies=[Depends(_require_cron_secret)])
def trigger_reminders(
    payload: ReminderActionRequest,
    runtime: ReminderRuntime = Depends(get_runtime),
) -> SweepSummary | RetrySummary:
    now = datetime.now(timezone.utc)
    if payload.now_override is not None:
        if runtime.settings.reminder_allow_now_override:
            now = payload.now_override
        else:
            logger.warning("ignoring now_override; REMINDER_ALLOW_NOW_OVERRIDE is disabled")

    try:
        if payload.action == "process":
            if payload.window_end is not None and payload.window_end < now:
                raise HTTPException(400, "window_end must not be before the sweep time")
            return runtime.sweeps.process(now=now, window_end=payload.window_end)
        if payload.action == "retry":
            return runtime.sweeps.retry_failed(max_age_hours=payload.max_age_hours, now=now)
    except SweepInProgressError as exc:
        raise HTTPException(409, str(exc)) from exc
    except ConfigurationError as exc:
        logger.error("reminder %s aborted: %s", payload.action, exc)
        raise HTTPException(503, str(exc)) from exc
    raise HTTPException(400, "invalid action")


@router.get("/reminders", response_model=ReminderListResponse)
def list_reminders(
    account_id: str | None = Query(default=None, alias="accountId"),
    runtime: ReminderRuntime = Depends(get_runtime),
) -> ReminderListResponse:
    if account_id is None or not account_id.strip():
        raise HTTPException(400, "accountId is required")
    try:
        if runtime.store.get_account(account_id) is None:
            raise AccountNotFoundError(account_id)
        rows = runtime.store.list_account_reminders(account_id, message_limit=5)
    except AccountNotFoundError as exc:
        raise HTTPException(404, f"account not found: {account_id}") from exc
    except ConfigurationError as exc:
        raise HTTPException(503, str(exc)) from exc

    return ReminderListResponse(
        account_id=account_id,
        reminders=[
            ReminderItem(
                reminder_id=row.reminder.reminder_id,
                vehicle_id=row.reminder.vehicle_id,
                registration=row.vehicle.registration if row.vehicle is not None else "",
                reminder_type=row.reminder.reminder_type,
                due_date=row.reminder.due_date,
                is_active=row.reminder.is_active,
                messages=[
                    MessageItem(
                        message_id=message.message_id,
                        channel=message.channel,
                        status=message.status,
                        recipient_masked=mask_contact_target(message.recipient, message.channel),
                        created_at=message.created_at,
                        sent_at=message.sent_at,
                        provider_ref=message.provider_ref,
                        error=message.error,
                    )
                    for message in row.messages
                ],
            )
            for row in rows
        ],
    )
