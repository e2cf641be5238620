from __future__ import annotations

import logging

from fastapi import FastAPI

from .api import router
from .config import Settings, get_settings, runtime_secret_issues
from .runtime import ReminderRuntime, build_runtime

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, runtime: ReminderRuntime | None = None) -> FastAPI:
    settings = settings or (runtime.settings if runtime is not None else get_settings())
    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: switch EMAIL_SENDER_TYPE/SMS_SENDER_TYPE back to stub "
                + "or set the required provider secrets."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.state.runtime = runtime or build_runtime(settings)
    app.include_router(router)
    return app


app = create_app()
