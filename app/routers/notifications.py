"""Alert delivery checks."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from app.auth import require_api_key
from app.context import AppContext, get_context
from app.models.responses import EmailCheckRequest, EmailCheckResponse, ErrorResponse
from app.services.alerts import NotificationConfigError, NotificationError

router = APIRouter(
    prefix="/notifications",
    tags=["notifications"],
    dependencies=[Depends(require_api_key)],
    responses={400: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)


@router.post("/test-email", response_model=EmailCheckResponse)
async def send_test_email(
    req: EmailCheckRequest | None = None,
    ctx: AppContext = Depends(get_context),
) -> EmailCheckResponse:
    """Send a test e-mail to *recipients*, or to the configured alert list."""
    try:
        sent_to = await ctx.notifier.send_test_email(req.recipients if req else None)
    except NotificationConfigError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except NotificationError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return EmailCheckResponse(sent=True, recipients=sent_to)
