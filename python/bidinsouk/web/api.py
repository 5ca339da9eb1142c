"""FastAPI surface for the auction engine.

Serves:
- REST endpoints for auction operations
- WebSocket feed of notification events per auction
- Admin endpoints for the sweep and analytics report
"""

import logging
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..config import Config, load_config
from ..models.money import Money
from ..models.types import (
    ErrorCategory,
    NotificationEvent,
    Rejection,
    RejectionReason,
    current_ts_ms,
)
from ..orchestrator import Orchestrator
from ..services.ports import StoreUnavailable

logger = logging.getLogger(__name__)


# ============================================================================
# Models
# ============================================================================

class MoneyModel(BaseModel):
    amount: int = Field(ge=0, description="Amount in minor units")
    currency: str = Field(default="MAD", min_length=3, max_length=3)

    def to_money(self) -> Money:
        return Money(self.amount, self.currency.upper())


class CreateAuctionRequest(BaseModel):
    seller_id: str
    product_id: str
    starting_price: MoneyModel
    min_increment: Optional[MoneyModel] = None
    reserve_price: Optional[MoneyModel] = None
    buy_now_price: Optional[MoneyModel] = None
    anti_sniping_window_seconds: Optional[int] = Field(default=None, ge=0)
    anti_sniping_extension_seconds: Optional[int] = Field(default=None, ge=0)
    max_extensions: Optional[int] = Field(default=None, gt=0)


class ScheduleRequest(BaseModel):
    start_ts: int
    end_ts: int


class BidRequest(BaseModel):
    bidder_id: str
    amount: MoneyModel


class MandateRequest(BaseModel):
    bidder_id: str
    max_amount: MoneyModel
    increment: MoneyModel


class BuyNowRequest(BaseModel):
    buyer_id: str


class CancelRequest(BaseModel):
    reason: str
    admin_override: bool = False


class ExtendRequest(BaseModel):
    minutes: int = Field(gt=0, description="Minutes to add to the end time")
    actor_id: Optional[str] = None


# ============================================================================
# WebSocket Manager
# ============================================================================

class ConnectionManager:
    """Manage WebSocket subscriptions per auction.

    Also acts as a notifier: every event is pushed to the sockets watching
    its auction.
    """

    def __init__(self):
        self.subscriptions: Dict[str, List[WebSocket]] = {}

    @property
    def connection_count(self) -> int:
        return sum(len(sockets) for sockets in self.subscriptions.values())

    async def connect(self, auction_id: str, websocket: WebSocket):
        await websocket.accept()
        self.subscriptions.setdefault(auction_id, []).append(websocket)
        logger.info(f"Client subscribed to {auction_id}. Total: {self.connection_count}")

    def disconnect(self, auction_id: str, websocket: WebSocket):
        sockets = self.subscriptions.get(auction_id, [])
        if websocket in sockets:
            sockets.remove(websocket)
        if not sockets:
            self.subscriptions.pop(auction_id, None)
        logger.info(f"Client unsubscribed from {auction_id}. Total: {self.connection_count}")

    async def notify(self, event: NotificationEvent) -> None:
        """Send the event to every client watching its auction."""
        data = event.to_dict()
        for websocket in list(self.subscriptions.get(event.auction_id, [])):
            try:
                await websocket.send_json(data)
            except Exception as e:
                logger.warning(f"Failed to send to client: {e}")
                self.disconnect(event.auction_id, websocket)


# ============================================================================
# Helpers
# ============================================================================

def _status_for(rejection: Rejection) -> int:
    if rejection.reason == RejectionReason.AUCTION_NOT_FOUND:
        return 404
    if rejection.category == ErrorCategory.INFRASTRUCTURE:
        return 503
    if rejection.category == ErrorCategory.STATE:
        return 409
    return 400


def _raise_rejection(rejection: Rejection):
    raise HTTPException(status_code=_status_for(rejection), detail=rejection.to_dict())


def _money(model: Optional[MoneyModel]) -> Optional[Money]:
    if model is None:
        return None
    try:
        return model.to_money()
    except (ValueError, TypeError) as e:
        raise HTTPException(status_code=400, detail={"reason": "INVALID_AMOUNT", "message": str(e)})


def _seconds_to_ms(seconds: Optional[int]) -> Optional[int]:
    return seconds * 1000 if seconds is not None else None


def _bid_outcome(result) -> dict:
    return {
        "bid": result.bid.to_dict(),
        "own_bid": result.own_bid.to_dict(),
        "placed_bids": [b.to_dict() for b in result.placed_bids],
        "current_bid": result.auction.current_bid.to_dict(),
        "leader_id": result.auction.leader_id,
        "auto_bids_triggered": result.auto_bids_triggered,
        "was_extended": result.was_extended,
        "end_ts": result.auction.end_ts,
        "extension_limit_reached": result.extension_rejection is not None,
    }


# ============================================================================
# App
# ============================================================================

def create_app(
    config: Optional[Config] = None,
    orchestrator: Optional[Orchestrator] = None,
    clock: Callable[[], int] = current_ts_ms,
    run_scheduler: Optional[bool] = None,
) -> FastAPI:
    """Build the API around one orchestrator.

    The orchestrator is started and stopped with the application lifespan.
    """
    if orchestrator is None:
        orchestrator = Orchestrator(config or load_config())

    manager = ConnectionManager()
    orchestrator.notifier.add(manager)
    service = orchestrator.service

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await orchestrator.start(run_scheduler=run_scheduler)
        try:
            yield
        finally:
            await orchestrator.stop()

    app = FastAPI(
        title="Bidinsouk Auction Engine",
        description="Auction state, bidding, proxy bids and anti-sniping for Bidinsouk",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.manager = manager
    app.state.clock = clock

    # CORS for development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
        logger.error(f"Store unavailable on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=503,
            content={"detail": {"reason": "UNAVAILABLE", "message": str(exc)}},
        )

    # ------------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------------

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "version": __version__}

    @app.post("/api/auctions", status_code=201)
    async def create_auction(req: CreateAuctionRequest):
        """Create an auction in DRAFT."""
        now = clock()
        result = await service.create_auction(
            seller_id=req.seller_id,
            product_id=req.product_id,
            starting_price=_money(req.starting_price),
            now=now,
            min_increment=_money(req.min_increment),
            reserve_price=_money(req.reserve_price),
            buy_now_price=_money(req.buy_now_price),
            anti_sniping_window_ms=_seconds_to_ms(req.anti_sniping_window_seconds),
            anti_sniping_extension_ms=_seconds_to_ms(req.anti_sniping_extension_seconds),
            max_extensions=req.max_extensions,
        )
        if not result.success:
            _raise_rejection(result.rejection)
        return service.get_auction_snapshot(result.auction.auction_id, now).to_dict()

    @app.post("/api/auctions/{auction_id}/schedule")
    async def schedule_auction(auction_id: str, req: ScheduleRequest):
        now = clock()
        result = await service.schedule_auction(auction_id, req.start_ts, req.end_ts, now)
        if not result.success:
            _raise_rejection(result.rejection)
        return service.get_auction_snapshot(auction_id, now).to_dict()

    @app.get("/api/auctions/{auction_id}")
    async def get_auction(auction_id: str):
        """Current snapshot of an auction."""
        snapshot = service.get_auction_snapshot(auction_id, clock())
        if snapshot is None:
            raise HTTPException(status_code=404, detail=f"Auction {auction_id} not found")
        return snapshot.to_dict()

    @app.post("/api/auctions/{auction_id}/bids")
    async def place_bid(auction_id: str, req: BidRequest):
        result = await service.place_bid(auction_id, req.bidder_id, _money(req.amount), clock())
        if not result.success:
            _raise_rejection(result.rejection)
        return _bid_outcome(result)

    @app.get("/api/auctions/{auction_id}/bids")
    async def get_bids(auction_id: str, since_ts: Optional[int] = None, limit: int = 100):
        """Bid history; since_ts returns only bids after that time."""
        history = service.get_bid_history(auction_id, since_ts=since_ts, limit=limit)
        if history is None:
            raise HTTPException(status_code=404, detail=f"Auction {auction_id} not found")
        return {
            "auction_id": auction_id,
            "bids": [b.to_dict() for b in history["bids"]],
            "total_bids": history["total_bids"],
            "unique_bidders": history["unique_bidders"],
            "automatic_bids": history["automatic_bids"],
            "highest_bid": history["highest_bid"].to_dict(),
            "lowest_bid": history["lowest_bid"].to_dict(),
            "suggested_bids": [m.to_dict() for m in history["suggested_bids"]],
        }

    @app.post("/api/auctions/{auction_id}/auto-bids", status_code=201)
    async def create_mandate(auction_id: str, req: MandateRequest):
        result = await service.create_auto_bid_mandate(
            auction_id,
            req.bidder_id,
            _money(req.max_amount),
            _money(req.increment),
            clock(),
        )
        if not result.success:
            _raise_rejection(result.rejection)
        return {
            "mandate_id": result.mandate.mandate_id,
            "active": result.mandate.active,
            "placed_bids": [b.to_dict() for b in result.placed_bids],
            "current_bid": result.auction.current_bid.to_dict(),
            "leader_id": result.auction.leader_id,
        }

    @app.post("/api/auctions/{auction_id}/buy-now")
    async def buy_now(auction_id: str, req: BuyNowRequest):
        result = await service.buy_now(auction_id, req.buyer_id, clock())
        if not result.success:
            _raise_rejection(result.rejection)
        return {
            "bid": result.bid.to_dict(),
            "winner_id": result.auction.winner_id,
            "order_id": result.auction.order_id,
            "state": result.auction.state.name,
        }

    @app.post("/api/auctions/{auction_id}/close")
    async def close_auction(auction_id: str):
        result = await service.close_auction(auction_id, clock())
        if not result.success:
            _raise_rejection(result.rejection)
        return {
            "auction_id": auction_id,
            "state": result.auction.state.name,
            "winner_id": result.winner_id,
            "order_id": result.order_id,
            "final_price": result.auction.current_bid.to_dict(),
            "reserve_met": result.auction.reserve_met,
        }

    @app.post("/api/auctions/{auction_id}/cancel")
    async def cancel_auction(auction_id: str, req: CancelRequest):
        result = await service.cancel_auction(
            auction_id, req.reason, admin_override=req.admin_override, now=clock()
        )
        if not result.success:
            _raise_rejection(result.rejection)
        return {
            "auction_id": auction_id,
            "state": result.auction.state.name,
            "notified_bidders": result.notified_bidders,
        }

    @app.post("/api/auctions/{auction_id}/extend")
    async def extend_auction(auction_id: str, req: ExtendRequest):
        """Seller or admin extension of a running auction."""
        now = clock()
        result = await service.extend_auction(auction_id, req.minutes * 60_000, req.actor_id, now)
        if not result.success:
            _raise_rejection(result.rejection)
        return service.get_auction_snapshot(auction_id, now).to_dict()

    @app.get("/api/status")
    async def status_summary():
        """Auction counts per state."""
        return service.get_status_summary()

    @app.get("/api/stats")
    async def get_stats():
        stats = orchestrator.get_stats()
        stats["websocket_clients"] = manager.connection_count
        return stats

    @app.post("/api/admin/sweep")
    async def run_sweep():
        """Run one scheduler sweep now."""
        report = await orchestrator.scheduler.sweep(clock())
        return report.to_dict()

    @app.get("/api/admin/report")
    async def analytics_report(top: int = 10):
        return orchestrator.build_report(top)

    @app.websocket("/ws/auctions/{auction_id}")
    async def auction_feed(websocket: WebSocket, auction_id: str):
        """Push notification events for one auction."""
        await manager.connect(auction_id, websocket)
        try:
            snapshot = service.get_auction_snapshot(auction_id, clock())
            if snapshot is not None:
                await websocket.send_json({"event_type": "SNAPSHOT", "payload": snapshot.to_dict()})
            while True:
                # Clients may send pings; events are pushed by notify()
                await websocket.receive_text()
        except WebSocketDisconnect:
            manager.disconnect(auction_id, websocket)
        except Exception as e:
            logger.error(f"WebSocket error: {e}")
            manager.disconnect(auction_id, websocket)

    return app


# ============================================================================
# Main
# ============================================================================

def run_server(config: Optional[Config] = None, host: Optional[str] = None, port: Optional[int] = None):
    """Run the API server."""
    import uvicorn

    config = config or load_config()
    app = create_app(config)
    uvicorn.run(app, host=host or config.server.host, port=port or config.server.port)
