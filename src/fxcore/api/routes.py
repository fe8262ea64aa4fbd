"""Ops endpoints: service health, manual monitor tick, fee quotes."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from fxcore.exceptions import FatalConfigError, ValidationError
from fxcore.logging import get_logger
from fxcore.models import FeeBreakdown, TickResult
from fxcore.money import to_decimal

logger = get_logger(__name__)

router = APIRouter()


class FeeQuoteRequest(BaseModel):
    amount: str  # string so the amount never passes through float
    from_currency: str
    to_currency: str
    tier: str | None = None  # PREMIUM, GOLD or SILVER


def _tick_to_dict(result: TickResult | None) -> dict[str, Any] | None:
    if result is None:
        return None
    return {
        "tick_id": result.tick_id,
        "processed": result.processed,
        "notified": result.notified,
        "rearmed": result.rearmed,
        "errors": result.errors,
        "push_failed": result.push_failed,
        "email_failed": result.email_failed,
        "skipped_pairs": result.skipped_pairs,
        "started_at": result.started_at,
        "finished_at": result.finished_at,
    }


def _breakdown_to_dict(breakdown: FeeBreakdown) -> dict[str, Any]:
    return {
        key: str(value) if isinstance(value, Decimal) else value
        for key, value in vars(breakdown).items()
    }


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    """Service status and configuration flags."""
    state = request.app.state
    monitor = state.rule_monitor
    settings = state.settings
    return JSONResponse(
        content={
            "status": "halted" if monitor.state.value == "halted" else "healthy",
            "service": "fxcore",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "monitor_state": monitor.state.value,
            "monitor_running": monitor.is_running,
            "last_tick": _tick_to_dict(monitor.last_result),
            "monitor_errors": monitor.error_counts,
            "provider_configured": bool(settings.provider.app_id.get_secret_value()),
            "push_backend": settings.push.backend,
            "email_configured": bool(settings.mail.domain),
        }
    )


@router.post("/monitor/run")
async def run_monitor(request: Request) -> JSONResponse:
    """Run one monitor tick now, unless one is already in flight."""
    monitor = request.app.state.rule_monitor
    logger.info("manual_tick_requested")
    try:
        result = await monitor.run_tick()
    except FatalConfigError as e:
        return JSONResponse(status_code=503, content={"error": str(e)})
    if result is None:
        return JSONResponse(status_code=409, content={"error": "tick already running"})
    return JSONResponse(content={"success": True, **_tick_to_dict(result)})


@router.post("/fees/quote")
async def quote_fee(request: Request, body: FeeQuoteRequest) -> JSONResponse:
    """Fee breakdown for a transfer."""
    calculator = request.app.state.fee_calculator
    try:
        breakdown = calculator.quote(
            to_decimal(body.amount), body.from_currency, body.to_currency, tier=body.tier
        )
    except ValidationError as e:
        return JSONResponse(status_code=422, content={"error": str(e)})
    return JSONResponse(content=_breakdown_to_dict(breakdown))
