"""Internal API routers: /status and /signals endpoints.

No business logic.  Serves the shared status board the orchestrators
update each cycle and reads signal history through the repo.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

logger = logging.getLogger("ictbot")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_DEFAULT_ACCOUNT_STATUS: dict = {
    "running": False,
    "symbol": None,
    "timeframe": None,
    "connected": False,
    "balance": None,
    "level": None,
    "lot_size": None,
    "cycle_count": 0,
    "last_cycle_at": None,
    "last_action": None,
    "last_signal": None,
    "active_session": None,
}

# Keyed by account id → status dict
_account_statuses: dict[str, dict] = {}

_signal_repo = None  # Set via configure_routers()
_log_repo = None     # Set via configure_routers()


def configure_routers(signal_repo=None, log_repo=None) -> None:
    """Inject repositories from the application startup.

    Args:
        signal_repo: A ``SignalRepo`` instance (or duck-type for tests).
        log_repo: A ``LogRepo`` instance (or duck-type for tests).
    """
    global _signal_repo, _log_repo  # noqa: PLW0603
    _signal_repo = signal_repo
    _log_repo = log_repo


def update_account_status(account_id: str, **fields) -> None:
    """Update individual fields of an account's status dict."""
    if account_id not in _account_statuses:
        _account_statuses[account_id] = {
            **_DEFAULT_ACCOUNT_STATUS,
            "account_id": account_id,
        }
    _account_statuses[account_id].update(fields)


def reset_status() -> None:
    _account_statuses.clear()


# ── Routes ───────────────────────────────────────────────────────────────


@router.get("/status")
async def get_status():
    """Status of every registered account."""
    return {"accounts": dict(_account_statuses)}


@router.get("/status/{account_id}")
async def get_account_status(account_id: str):
    status = _account_statuses.get(account_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Unknown account: {account_id}")
    return status


@router.get("/signals/history")
async def get_signal_history(
    limit: int = Query(default=20, ge=1, le=200),
    account_id: Optional[str] = None,
    symbol: Optional[str] = None,
):
    """Recent fused signals, newest first."""
    if _signal_repo is None:
        return {"signals": []}
    return {"signals": _signal_repo.get_signals(limit=limit, account_id=account_id, symbol=symbol)}


@router.get("/logs")
async def get_logs(
    limit: int = Query(default=50, ge=1, le=500),
    account_id: Optional[str] = None,
    event_type: Optional[str] = None,
):
    """Recent trading log entries, newest first."""
    if _log_repo is None:
        return {"logs": []}
    return {"logs": _log_repo.get_logs(limit=limit, account_id=account_id, event_type=event_type)}
