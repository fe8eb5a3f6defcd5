import asyncio
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from routers.admin import get_market_service
from schemas.market import InstrumentDetail, MarketSnapshot, NewsEvent
from services.market_service import MarketService

router = APIRouter(prefix="/api/market", tags=["market"])

KEEPALIVE_SECONDS = 15


@router.get("/snapshot", response_model=MarketSnapshot)
async def get_snapshot(
    market: Annotated[MarketService, Depends(get_market_service)],
):
    """Latest published snapshot of every instrument and the session counters."""
    return market.latest_snapshot


@router.get("/news", response_model=list[NewsEvent])
async def get_news(
    market: Annotated[MarketService, Depends(get_market_service)],
    limit: int = Query(30, ge=1, le=100),
):
    """Recent news, newest first."""
    return market.news(limit)


@router.get("/instruments/{instrument_id}", response_model=InstrumentDetail)
async def get_instrument(
    instrument_id: str,
    market: Annotated[MarketService, Depends(get_market_service)],
):
    """Candles and order book for one instrument."""
    detail = market.instrument_detail(instrument_id)
    if detail is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Instrument not found"
        )
    return detail


@router.get("/stream")
async def stream_snapshots(
    request: Request,
    market: Annotated[MarketService, Depends(get_market_service)],
):
    """SSE stream of market snapshots, one event per tick."""
    queue = market.subscribe()

    async def event_generator():
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    snapshot = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield f"event: snapshot\ndata: {snapshot.model_dump_json()}\n\n"
        finally:
            market.unsubscribe(queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
