"""Read-only JSON API over the engine's latest state."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from autopilot.exceptions import PortfolioReadError
from autopilot.models import Opportunity, PortfolioSnapshot

log = structlog.get_logger(__name__)

router = APIRouter()


def _decimal_to_str(obj: Any) -> Any:
    """Recursively convert Decimal values to strings for JSON serialization."""
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, dict):
        return {k: _decimal_to_str(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_decimal_to_str(item) for item in obj]
    return obj


def _snapshot_payload(snapshot: PortfolioSnapshot) -> dict[str, Any]:
    return _decimal_to_str({
        "total_value": snapshot.total_value,
        "total_spot_value": snapshot.total_spot_value,
        "futures_balance": snapshot.futures_balance,
        "deployed_capital": snapshot.deployed_capital,
        "available_capital": snapshot.available_capital,
        "utilization": round(snapshot.utilization, 2),
        "total_pnl": snapshot.total_pnl,
        "spot_usdt_free": snapshot.spot_usdt_free,
        "futures_usdt_available": snapshot.futures_usdt_available,
        "taken_at": snapshot.taken_at,
        "positions": [
            {
                "symbol": p.symbol,
                "side": "long" if p.is_long else "short",
                "size": p.signed_size,
                "notional_usd": p.notional_usd,
                "unrealized_pnl": p.unrealized_pnl,
                "leverage": p.leverage,
            }
            for p in snapshot.active_positions
        ],
        "spot_holdings": [
            {"asset": h.asset, "amount": h.amount, "value": h.value}
            for h in snapshot.spot_holdings
        ],
    })


def _opportunity_payload(rank: int, opp: Opportunity) -> dict[str, Any]:
    return _decimal_to_str({
        "rank": rank + 1,
        "symbol": opp.symbol,
        "funding_rate": opp.funding_rate,
        "daily_rate": opp.daily_rate,
        "mark_price": opp.mark_price,
        "volume_usd": opp.volume_usd,
        "score": opp.opportunity_score,
        "delta_neutral": opp.is_delta_neutral,
    })


@router.get("/status")
async def get_status(request: Request) -> JSONResponse:
    """Engine state, breaker status and job counters."""
    engine = request.app.state.engine
    return JSONResponse(content=engine.status())


@router.get("/portfolio")
async def get_portfolio(request: Request) -> JSONResponse:
    """Fresh portfolio snapshot; falls back to the last one if the read fails."""
    engine = request.app.state.engine
    try:
        snapshot = await engine.analyzer.analyze()
    except PortfolioReadError as exc:
        log.warning("dashboard_portfolio_read_failed", error=str(exc))
        snapshot = engine.state.last_snapshot
        if snapshot is None:
            return JSONResponse(status_code=503, content={"error": "portfolio unavailable"})
    return JSONResponse(content=_snapshot_payload(snapshot))


@router.get("/opportunities")
async def get_opportunities(request: Request, limit: int = 20) -> JSONResponse:
    """Ranked opportunities from the latest cycle."""
    engine = request.app.state.engine
    ranked = engine.state.last_opportunities[: max(limit, 0)]
    return JSONResponse(content=[_opportunity_payload(i, o) for i, o in enumerate(ranked)])


@router.get("/audit")
async def get_audit(request: Request, steps: int = 50) -> JSONResponse:
    """Audit summary plus the most recent steps and failures."""
    engine = request.app.state.engine
    report = engine.auditor.generate_report()
    report["steps"] = report["steps"][-max(steps, 0):] if steps else []
    return JSONResponse(content=report)
