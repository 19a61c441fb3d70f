from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

from handshake.schemas import ErrorDetail, ErrorResponse

_STATUS_BY_CODE = {
    "not_found": 404,
    "forbidden": 403,
    "not_sender": 403,
    "not_receiver": 403,
    "self_confirmation": 403,
    "role_taken": 409,
    "pass_already_used": 409,
    "already_added": 409,
    "active_order_exists": 409,
    "active_ticket_limit": 429,
    "rescan_limit_reached": 429,
    "payout_failed": 502,
}


class ActionRejected(Exception):
    """A ticket or order operation refused by its guards.

    ``code`` is the machine-readable reason clients branch on. The HTTP status
    defaults from the code and may be overridden.
    """

    def __init__(self, code: str, message: str, status_code: int | None = None, details: dict | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code or _STATUS_BY_CODE.get(code, 400)
        self.details = details


async def action_rejected_handler(request: Request, exc: ActionRejected) -> JSONResponse:
    body = ErrorResponse(
        error=ErrorDetail(
            code=exc.code,
            message=exc.message,
            request_id=getattr(request.state, "request_id", ""),
            details=exc.details,
        )
    )
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())
