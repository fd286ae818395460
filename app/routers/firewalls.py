"""Firewall inventory, on-demand connect and diagnostic endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status

from app.auth import require_api_key
from app.context import AppContext, get_context
from app.models.firewall import (
    ConnectionCheckRequest,
    ConnectionTarget,
    FirewallCreateRequest,
    FirewallRecord,
    FirewallUpdateRequest,
)
from app.models.responses import (
    ConnectionCheckResponse,
    ConnectResponse,
    DiagnosticResponse,
    ErrorResponse,
)
from app.services.fetch import fetch_stats
from app.services.monitor import ProbeOutcome
from app.services.store import DuplicateTarget, TargetNotFound

router = APIRouter(
    prefix="/firewalls",
    tags=["firewalls"],
    dependencies=[Depends(require_api_key)],
    responses={404: {"model": ErrorResponse}},
)


def _not_found(exc: TargetNotFound) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


async def _probe(ctx: AppContext, firewall_id: str) -> ProbeOutcome:
    try:
        return await ctx.monitor.probe(firewall_id)
    except TargetNotFound as exc:
        raise _not_found(exc) from exc


# ── inventory ─────────────────────────────────────────────────────────────

@router.get("", response_model=list[FirewallRecord])
async def list_firewalls(ctx: AppContext = Depends(get_context)) -> list[FirewallRecord]:
    return await ctx.store.list()


@router.get("/{firewall_id}", response_model=FirewallRecord)
async def get_firewall(firewall_id: str, ctx: AppContext = Depends(get_context)) -> FirewallRecord:
    try:
        return await ctx.store.get(firewall_id)
    except TargetNotFound as exc:
        raise _not_found(exc) from exc


@router.post("", response_model=FirewallRecord, status_code=status.HTTP_201_CREATED)
async def create_firewall(
    req: FirewallCreateRequest,
    ctx: AppContext = Depends(get_context),
) -> FirewallRecord:
    if not req.password and not req.private_key:
        raise HTTPException(status_code=422, detail="password or private_key is required")
    try:
        return await ctx.store.add(req)
    except DuplicateTarget as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.put("/{firewall_id}", response_model=FirewallRecord)
async def update_firewall(
    firewall_id: str,
    req: FirewallUpdateRequest,
    ctx: AppContext = Depends(get_context),
) -> FirewallRecord:
    try:
        return await ctx.store.update(firewall_id, req)
    except TargetNotFound as exc:
        raise _not_found(exc) from exc


@router.delete("/{firewall_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_firewall(firewall_id: str, ctx: AppContext = Depends(get_context)) -> Response:
    try:
        await ctx.store.delete(firewall_id)
    except TargetNotFound as exc:
        raise _not_found(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── live access ───────────────────────────────────────────────────────────

@router.post("/{firewall_id}/connect", response_model=ConnectResponse)
async def connect_firewall(firewall_id: str, ctx: AppContext = Depends(get_context)) -> ConnectResponse:
    """Fetch fresh stats now, subject to the per-firewall connect throttle."""
    outcome = await _probe(ctx, firewall_id)
    return ConnectResponse(
        firewall=outcome.record,
        connect_attempted=outcome.attempted,
        connect_success=outcome.success,
        connect_deduped=outcome.deduped,
        connect_cooldown=outcome.cooldown,
        retry_after_ms=outcome.retry_after_ms,
        error=outcome.error,
    )


@router.get("/{firewall_id}/diagnostic", response_model=DiagnosticResponse)
async def diagnose_firewall(firewall_id: str, ctx: AppContext = Depends(get_context)) -> DiagnosticResponse:
    """Run the collection bundle and return the raw console transcript."""
    outcome = await _probe(ctx, firewall_id)
    if not outcome.attempted:
        return DiagnosticResponse(
            success=False,
            connect_attempted=False,
            retry_after_ms=outcome.retry_after_ms,
            error="Connection attempt throttled, retry later",
        )
    raw = outcome.transcript
    return DiagnosticResponse(
        success=bool(outcome.success),
        error=outcome.error,
        raw_output=raw,
        summary=outcome.record.summary,
        bytes_received=len(raw.encode()),
        lines_received=len(raw.splitlines()),
    )


@router.post("/test", response_model=ConnectionCheckResponse)
async def check_connection(
    req: ConnectionCheckRequest,
    ctx: AppContext = Depends(get_context),
) -> ConnectionCheckResponse:
    """Try unsaved credentials once.  Nothing is stored and no throttle applies."""
    if not req.password and not req.private_key:
        raise HTTPException(status_code=422, detail="password or private_key is required")
    target = ConnectionTarget(
        id=f"check:{req.host}",
        host=req.host,
        port=req.port,
        username=req.username,
        password=req.password or None,
        private_key=req.private_key or None,
    )
    fetched = await fetch_stats(
        ctx.sessions, target, timeout=ctx.settings.fwmon_ssh_session_timeout_seconds,
    )
    return ConnectionCheckResponse(
        success=fetched.success, error=fetched.error, summary=fetched.summary,
    )
