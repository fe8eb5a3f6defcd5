import asyncio
from typing import Annotated, Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from cachetools import TTLCache

from routers.admin import get_market_service, limiter
from schemas.account import (
    AccountCreate,
    AccountResponse,
    LeveragedBuyRequest,
    LimitOrderRequest,
    MarketOrderRequest,
    NotificationsResponse,
    OrderResult,
    PortfolioValuation,
)
from services.market_service import AccountNotFound, MarketService

router = APIRouter(prefix="/api/accounts", tags=["accounts"])


class _IdempotentEntry:
    """One reserved Idempotency-Key: the request it was first used for, and its result."""

    def __init__(self, fingerprint: str):
        self.fingerprint = fingerprint
        self.lock = asyncio.Lock()
        self.result: Optional[OrderResult] = None


# ── Idempotency cache: (account_id, Idempotency-Key) → _IdempotentEntry ──
_idempotent_results: TTLCache = TTLCache(maxsize=1024, ttl=600)

ORDER_RATE_LIMIT = "120/minute"


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail="Account not found"
    )


async def _submit(
    account_id: str,
    idempotency_key: str | None,
    fingerprint: str,
    call: Callable[[], Awaitable[OrderResult]],
) -> OrderResult:
    """Run an order call once per idempotency key. Rejections are returned, not raised.

    The key is reserved before the first await, so a retry that arrives while
    the original is still waiting on the market lock gets the same result.
    ``fingerprint`` identifies the endpoint and body; reusing a key for a
    different request is a 422.
    """
    if not idempotency_key:
        try:
            return await call()
        except AccountNotFound:
            raise _not_found()

    cache_key = (account_id, idempotency_key)
    entry = _idempotent_results.get(cache_key)
    if entry is None:
        entry = _IdempotentEntry(fingerprint)
        _idempotent_results[cache_key] = entry
    elif entry.fingerprint != fingerprint:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Idempotency-Key was already used for a different request",
        )

    async with entry.lock:
        if entry.result is None:
            try:
                entry.result = await call()
            except AccountNotFound:
                raise _not_found()
        return entry.result


@router.post("", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
async def create_account(
    data: AccountCreate,
    market: Annotated[MarketService, Depends(get_market_service)],
):
    """Open a game account with the starting cash."""
    return market.create_account(data.name).model_dump()


@router.get("/{account_id}", response_model=AccountResponse)
async def get_account(
    account_id: str,
    market: Annotated[MarketService, Depends(get_market_service)],
):
    try:
        return market.get_account(account_id).model_dump()
    except AccountNotFound:
        raise _not_found()


@router.get("/{account_id}/portfolio", response_model=PortfolioValuation)
async def get_portfolio(
    account_id: str,
    market: Annotated[MarketService, Depends(get_market_service)],
):
    """Holdings valued at current prices, leveraged positions at their evaluated amount."""
    try:
        return market.portfolio(account_id)
    except AccountNotFound:
        raise _not_found()


@router.get("/{account_id}/notifications", response_model=NotificationsResponse)
async def get_notifications(
    account_id: str,
    market: Annotated[MarketService, Depends(get_market_service)],
):
    """Executed limit orders and liquidations since the last call. Draining."""
    try:
        executed, liquidations = market.drain_notifications(account_id)
    except AccountNotFound:
        raise _not_found()
    return NotificationsResponse(executed_orders=executed, liquidations=liquidations)


@router.post("/{account_id}/orders/market", response_model=OrderResult)
@limiter.limit(ORDER_RATE_LIMIT)
async def place_market_order(
    request: Request,
    account_id: str,
    data: MarketOrderRequest,
    market: Annotated[MarketService, Depends(get_market_service)],
    idempotency_key: Annotated[str | None, Header()] = None,
):
    """Buy or sell at the current price. Buys above leverage 1 open a leveraged position."""
    return await _submit(
        account_id, idempotency_key, f"market:{data.model_dump_json()}",
        lambda: market.place_market_order(
            account_id, data.stock_id, data.side, data.quantity, data.leverage,
        ),
    )


@router.post("/{account_id}/orders/leveraged", response_model=OrderResult)
@limiter.limit(ORDER_RATE_LIMIT)
async def place_leveraged_buy(
    request: Request,
    account_id: str,
    data: LeveragedBuyRequest,
    market: Annotated[MarketService, Depends(get_market_service)],
    idempotency_key: Annotated[str | None, Header()] = None,
):
    return await _submit(
        account_id, idempotency_key, f"leveraged:{data.model_dump_json()}",
        lambda: market.place_leveraged_buy(account_id, data.stock_id, data.quantity, data.leverage),
    )


@router.post("/{account_id}/orders/limit", response_model=OrderResult)
@limiter.limit(ORDER_RATE_LIMIT)
async def place_limit_order(
    request: Request,
    account_id: str,
    data: LimitOrderRequest,
    market: Annotated[MarketService, Depends(get_market_service)],
    idempotency_key: Annotated[str | None, Header()] = None,
):
    """Queue an order that executes at the market price once the target is reached."""
    return await _submit(
        account_id, idempotency_key, f"limit:{data.model_dump_json()}",
        lambda: market.place_limit_order(
            account_id, data.stock_id, data.side, data.quantity, data.target_price,
        ),
    )


@router.delete("/{account_id}/orders/limit/{order_id}", response_model=OrderResult)
@limiter.limit(ORDER_RATE_LIMIT)
async def cancel_limit_order(
    request: Request,
    account_id: str,
    order_id: str,
    market: Annotated[MarketService, Depends(get_market_service)],
):
    return await _submit(
        account_id, None, "cancel", lambda: market.cancel_limit_order(account_id, order_id)
    )


@router.post("/{account_id}/sell-all", response_model=OrderResult)
@limiter.limit(ORDER_RATE_LIMIT)
async def sell_all(
    request: Request,
    account_id: str,
    market: Annotated[MarketService, Depends(get_market_service)],
    idempotency_key: Annotated[str | None, Header()] = None,
):
    """Sell every position on a tradable instrument at the current price."""
    return await _submit(
        account_id, idempotency_key, "sell-all", lambda: market.sell_all(account_id)
    )
