"""
backend/backoffice/services/market_broadcast.py

Purpose:
    Live odds broadcast. One MarketPoller per subscribed market fetches the
    feed on a fixed cadence and emits into the market's room; the registry
    starts pollers on first subscribe and a periodic sweep retires pollers
    whose room is empty.

Dependencies:
    - backoffice.services.market_feed
    - backoffice.services.realtime_gateway
    - backoffice.config
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from backoffice.config import settings
from backoffice.services.market_feed import MarketCategory, MarketFeedFetcher, market_feed_fetcher
from backoffice.services.realtime_gateway import RealtimeGateway, realtime_gateway

logger = logging.getLogger("backoffice.market_broadcast")


def room_for_market(market_id: str) -> str:
    return f"market:{market_id}"


def event_for_market(market_id: str) -> str:
    return f"market:data:{market_id}"


@dataclass(frozen=True)
class MarketRef:
    """A market to poll: our id, its category, the upstream id the feed is
    queried with and the stored runner names odds are matched against.

    Fancy markets are queried by upstream event id, the others by upstream
    market id; ``feed_id`` defaults to ``id``.
    """

    id: str
    category: MarketCategory
    feed_id: str = ""
    runner_names: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "category", MarketCategory(self.category))
        object.__setattr__(self, "runner_names", tuple(self.runner_names))
        if not self.feed_id:
            object.__setattr__(self, "feed_id", self.id)


class MarketPoller:
    """Fixed-cadence poll loop for one market.

    A tick is skipped while the previous tick's fetch is still in flight, so
    emits for a market never arrive out of order. stop() cancels the loop
    immediately; an in-flight fetch is left to finish and its result dropped.
    """

    def __init__(
        self,
        market: MarketRef,
        room: str,
        *,
        fetcher: MarketFeedFetcher,
        gateway: RealtimeGateway,
        interval: float,
    ) -> None:
        self.market = market
        self.room = room
        self.event_name = event_for_market(market.id)
        self._fetcher = fetcher
        self._gateway = gateway
        self._interval = interval
        self._task: asyncio.Task | None = None
        self._inflight: asyncio.Task | None = None
        self._stopped = False
        self.ticks = 0
        self.skipped = 0
        self.emitted = 0
        self.failures = 0

    @property
    def active(self) -> bool:
        return self._task is not None and not self._stopped

    def start(self) -> None:
        if self._task is not None or self._stopped:
            return
        self._task = asyncio.create_task(self._run(), name=f"market_poll:{self.market.id}")

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def shutdown(self) -> list[asyncio.Task]:
        """Stop and also cancel an in-flight fetch. Returns the tasks still winding down."""
        self.stop()
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        return [task for task in (self._task, self._inflight) if task is not None and not task.done()]

    async def _run(self) -> None:
        while not self._stopped:
            if self._inflight is not None and not self._inflight.done():
                self.skipped += 1
                logger.debug("Market %s: previous tick still running, skipping", self.market.id)
            else:
                self._inflight = asyncio.create_task(self._tick())
            await asyncio.sleep(self._interval)

    async def _tick(self) -> None:
        self.ticks += 1
        try:
            payload = await self._fetcher.fetch(self.market)
        except Exception:
            self.failures += 1
            logger.exception("Market %s feed fetch failed", self.market.id)
            return

        if payload is None or self._stopped:
            return

        try:
            await self._gateway.emit_to_room(self.room, self.event_name, payload)
            self.emitted += 1
        except Exception:
            self.failures += 1
            logger.exception("Market %s emit to %s failed", self.market.id, self.room)

    def stats(self) -> dict[str, Any]:
        return {
            "market_id": self.market.id,
            "category": self.market.category.value,
            "room": self.room,
            "active": self.active,
            "ticks": self.ticks,
            "skipped": self.skipped,
            "emitted": self.emitted,
            "failures": self.failures,
        }


class BroadcastRegistry:
    """Owns every MarketPoller, keyed by market id (at most one per market)."""

    def __init__(
        self,
        gateway: RealtimeGateway,
        fetcher: MarketFeedFetcher,
        *,
        interval: float,
        sweep_interval: float,
    ) -> None:
        self._gateway = gateway
        self._fetcher = fetcher
        self._interval = float(interval)
        self._sweep_interval = float(sweep_interval)
        self._pollers: dict[str, MarketPoller] = {}
        self._lock = asyncio.Lock()
        self._sweep_task: asyncio.Task | None = None
        self._running = False
        self._retired_total = 0

    async def start(self) -> None:
        async with self._lock:
            if self._running:
                return
            self._running = True
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="market_sweep")
            logger.info(
                "Broadcast registry started (tick %.1fs, sweep %.1fs)",
                self._interval, self._sweep_interval,
            )

    async def stop(self) -> None:
        async with self._lock:
            if self._sweep_task is not None:
                self._sweep_task.cancel()
                try:
                    await self._sweep_task
                except asyncio.CancelledError:
                    pass
                self._sweep_task = None
            pending: list[asyncio.Task] = []
            for poller in self._pollers.values():
                pending.extend(poller.shutdown())
            self._pollers.clear()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            self._running = False
            logger.info("Broadcast registry stopped")

    async def ensure_broadcast(self, market: MarketRef, room: str | None = None) -> bool:
        """Start polling ``market`` unless a poller already exists. Returns True if one was started."""
        room = room or room_for_market(market.id)
        async with self._lock:
            if market.id in self._pollers:
                return False
            poller = MarketPoller(
                market,
                room,
                fetcher=self._fetcher,
                gateway=self._gateway,
                interval=self._interval,
            )
            self._pollers[market.id] = poller
            poller.start()
        logger.info("Broadcast started for market %s (%s) -> %s", market.id, market.category.value, room)
        return True

    async def stop_broadcast(self, market_id: str) -> bool:
        async with self._lock:
            poller = self._pollers.pop(market_id, None)
        if poller is None:
            return False
        poller.stop()
        logger.info("Broadcast stopped for market %s", market_id)
        return True

    async def sweep(self) -> list[str]:
        """Stop and remove every poller whose room has no members."""
        retired: list[str] = []
        async with self._lock:
            for market_id, poller in list(self._pollers.items()):
                if self._gateway.get_room_member_count(poller.room) > 0:
                    continue
                poller.stop()
                del self._pollers[market_id]
                retired.append(market_id)
        if retired:
            self._retired_total += len(retired)
            logger.info("Sweep retired %d idle market broadcasts: %s", len(retired), retired)
        return retired

    def is_active(self, market_id: str) -> bool:
        return market_id in self._pollers

    def active_markets(self) -> list[str]:
        return sorted(self._pollers)

    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "interval_seconds": self._interval,
            "sweep_interval_seconds": self._sweep_interval,
            "active_markets": len(self._pollers),
            "retired_total": self._retired_total,
            "pollers": [poller.stats() for poller in self._pollers.values()],
        }

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Market broadcast sweep failed")


broadcast_registry = BroadcastRegistry(
    realtime_gateway,
    market_feed_fetcher,
    interval=settings.MARKET_BROADCAST_INTERVAL_SECONDS,
    sweep_interval=settings.MARKET_SWEEP_INTERVAL_SECONDS,
)
realtime_gateway.attach_registry(broadcast_registry)
