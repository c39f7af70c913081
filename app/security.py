from __future__ import annotations

import hmac

from fastapi import Header, Request

from app.errors import ApiError
from app.settings import get_settings

SCHEDULER_TOKEN_HEADER = "X-Scheduler-Token"


def _tokens_match(expected: str, provided: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def require_scheduler_token(
    request: Request,
    x_scheduler_token: str | None = Header(default=None, alias=SCHEDULER_TOKEN_HEADER),
) -> str:
    expected = (get_settings().scheduler_token or "").strip()
    if not expected:
        # Internal endpoints stay closed until a token is configured.
        raise ApiError(status_code=403, code="SCHEDULER_DISABLED", message="Scheduler endpoint is not configured.")

    provided = (x_scheduler_token or "").strip()
    if not provided or not _tokens_match(expected, provided):
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Invalid scheduler token.")

    request.state.actor = "scheduler"
    request.state.actor_id = "scheduler"
    return provided
