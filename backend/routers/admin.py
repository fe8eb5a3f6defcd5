import secrets
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address

from config import get_settings
from schemas.market import BatchRunResponse, SessionStatus
from services.market_service import MarketService

router = APIRouter(prefix="/api/admin", tags=["admin"])
settings = get_settings()

# Rate limiter: keyed by client IP
limiter = Limiter(key_func=get_remote_address)


def get_market_service(request: Request) -> MarketService:
    """The single market service created in the app lifespan."""
    return request.app.state.market


async def verify_admin_token(
    x_admin_token: Annotated[str | None, Header()] = None,
) -> None:
    if not x_admin_token or not secrets.compare_digest(x_admin_token, settings.admin_token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token",
        )


@router.get("/session", response_model=SessionStatus, dependencies=[Depends(verify_admin_token)])
async def get_session_status(
    market: Annotated[MarketService, Depends(get_market_service)],
):
    """Clock state, epoch and counters of the market session."""
    return market.status()


@router.post("/session/start", response_model=SessionStatus, dependencies=[Depends(verify_admin_token)])
async def start_session(
    market: Annotated[MarketService, Depends(get_market_service)],
):
    """Start the session clock in a fresh epoch. No-op while already running."""
    return await market.start()


@router.post("/session/stop", response_model=SessionStatus, dependencies=[Depends(verify_admin_token)])
async def stop_session(
    market: Annotated[MarketService, Depends(get_market_service)],
):
    """Stop the session clock. The last published snapshot stays valid."""
    return await market.stop()


@router.post("/session/reset", response_model=SessionStatus, dependencies=[Depends(verify_admin_token)])
async def reset_session(
    market: Annotated[MarketService, Depends(get_market_service)],
):
    """Reset every instrument and the clock counters to the initial configuration."""
    return await market.reset()


@router.post("/session/batch", response_model=BatchRunResponse, dependencies=[Depends(verify_admin_token)])
async def run_session_batch(
    market: Annotated[MarketService, Depends(get_market_service)],
    max_ticks: int = Query(60, ge=1, le=3600),
):
    """Advance the session by up to ``max_ticks`` ticks from a scheduled job.

    Only runs while the background clock is stopped, otherwise ``ticks_run`` is 0.
    """
    ticks = await market.run_batch(max_ticks)
    return BatchRunResponse(ticks_run=ticks, session=market.status())
