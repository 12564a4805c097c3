"""Background forfeiture of inactive players.

A sweep lists Active players whose last activity is older than the
forfeiture window and moves each one to Forfeit with a compare-and-set on
(status, effective activity). Several schedulers, in one process or many,
may sweep the same storage: the conditional update lets exactly one of them
win per player, and the others see a conflict they treat as a skip.
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, Field

from beacon.clock import utc_now
from beacon.errors import ConcurrencyConflict
from beacon.lifecycle import PlayerLifecycle, is_overdue

if TYPE_CHECKING:
    from beacon.clock import Clock
    from shared.dal.gateway import PersistenceGateway

logger = structlog.get_logger()

DEFAULT_FORFEITURE_WINDOW = timedelta(days=3)
DEFAULT_SWEEP_INTERVAL = timedelta(seconds=60)
DEFAULT_WARNING_LEAD = timedelta(days=1)


class SweepReport(BaseModel, frozen=True):
    """What one sweep did, per candidate player id."""

    cutoff: datetime
    forfeited: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()  # no longer overdue, or changed by another writer
    failed: tuple[str, ...] = ()


class ForfeitWarning(BaseModel, frozen=True):
    """An Active player whose forfeiture deadline is approaching."""

    player_id: str
    username: str
    last_activity: datetime
    deadline: datetime
    hours_inactive: float = Field(ge=0)


class ForfeitureScheduler:
    """Periodically forfeit players inactive for longer than the forfeiture window.

    Ticks are single-flight: a tick that fires while the previous sweep is
    still running is dropped, not queued. stop() cancels future ticks and
    waits for an in-flight sweep to finish.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        *,
        forfeiture_window: timedelta = DEFAULT_FORFEITURE_WINDOW,
        sweep_interval: timedelta = DEFAULT_SWEEP_INTERVAL,
        lifecycle: PlayerLifecycle | None = None,
        clock: Clock = utc_now,
    ) -> None:
        if forfeiture_window <= timedelta(0):
            raise ValueError(f"forfeiture_window must be positive, got {forfeiture_window}")
        if sweep_interval <= timedelta(0):
            raise ValueError(f"sweep_interval must be positive, got {sweep_interval}")
        self._gateway = gateway
        self._lifecycle = lifecycle or PlayerLifecycle(gateway)
        self._clock = clock
        self._forfeiture_window = forfeiture_window
        self._sweep_interval = sweep_interval
        self._ticker_task: asyncio.Task[None] | None = None
        self._sweep_task: asyncio.Task[SweepReport] | None = None

    @property
    def forfeiture_window(self) -> timedelta:
        return self._forfeiture_window

    @property
    def running(self) -> bool:
        return self._ticker_task is not None and not self._ticker_task.done()

    @property
    def sweep_in_flight(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def start(self) -> None:
        """Start ticking. The first tick fires immediately. No-op when already running."""
        if self.running:
            return
        self._ticker_task = asyncio.create_task(self._tick_loop())
        logger.info(
            "forfeiture scheduler started",
            forfeiture_window_seconds=self._forfeiture_window.total_seconds(),
            sweep_interval_seconds=self._sweep_interval.total_seconds(),
        )

    async def stop(self) -> None:
        """Stop future ticks and let an in-flight sweep finish. No-op when stopped."""
        ticker = self._ticker_task
        if ticker is None:
            return
        self._ticker_task = None
        ticker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await ticker

        sweep = self._sweep_task
        if sweep is not None and not sweep.done():
            await asyncio.wait({sweep})
        logger.info("forfeiture scheduler stopped")

    def tick(self) -> bool:
        """Launch a sweep unless one is already running. Returns False when dropped."""
        if self.sweep_in_flight:
            logger.info("forfeiture tick dropped, previous sweep still running")
            return False
        self._sweep_task = asyncio.create_task(self.sweep())
        return True

    async def _tick_loop(self) -> None:
        interval = self._sweep_interval.total_seconds()
        while True:
            self.tick()
            await asyncio.sleep(interval)

    async def sweep(self) -> SweepReport:
        """Forfeit every player overdue at the current time.

        Never raises for an individual candidate: failures are logged and the
        sweep moves on.
        """
        cutoff = self._clock() - self._forfeiture_window
        try:
            candidates = await self._gateway.list_active_players_older_than(cutoff)
        except Exception:
            logger.exception("forfeiture sweep could not list candidates", cutoff=cutoff.isoformat())
            return SweepReport(cutoff=cutoff)

        forfeited: list[str] = []
        skipped: list[str] = []
        failed: list[str] = []
        for player_id in candidates:
            try:
                applied = await self._forfeit_candidate(player_id, cutoff)
            except Exception:
                logger.exception("forfeiture failed for candidate", player_id=player_id)
                failed.append(player_id)
                continue
            (forfeited if applied else skipped).append(player_id)

        report = SweepReport(
            cutoff=cutoff,
            forfeited=tuple(forfeited),
            skipped=tuple(skipped),
            failed=tuple(failed),
        )
        if candidates:
            logger.info(
                "forfeiture sweep finished",
                candidates=len(candidates),
                forfeited=len(report.forfeited),
                skipped=len(report.skipped),
                failed=len(report.failed),
            )
        else:
            logger.debug("forfeiture sweep found no overdue players")
        return report

    async def _forfeit_candidate(self, player_id: str, cutoff: datetime) -> bool:
        # re-read: the listing may already be stale
        player = await self._gateway.get_player(player_id)
        if player is None or not is_overdue(player, cutoff):
            logger.info("forfeiture candidate no longer overdue", player_id=player_id)
            return False
        try:
            await self._lifecycle.forfeit(player_id, player.effective_activity)
        except ConcurrencyConflict:
            logger.info("forfeiture skipped, player changed concurrently", player_id=player_id)
            return False
        logger.info(
            "player forfeited",
            player_id=player_id,
            username=player.username,
            last_activity=player.effective_activity.isoformat(),
        )
        return True

    async def players_near_forfeit(self, warning_lead: timedelta = DEFAULT_WARNING_LEAD) -> list[ForfeitWarning]:
        """Active players who will be forfeited within warning_lead, soonest first."""
        if warning_lead <= timedelta(0):
            raise ValueError(f"warning_lead must be positive, got {warning_lead}")
        now = self._clock()
        warnings: list[ForfeitWarning] = []
        for player in await self._gateway.list_active_players():
            deadline = player.effective_activity + self._forfeiture_window
            if now <= deadline < now + warning_lead:
                warnings.append(
                    ForfeitWarning(
                        player_id=player.player_id,
                        username=player.username,
                        last_activity=player.effective_activity,
                        deadline=deadline,
                        hours_inactive=max(0.0, (now - player.effective_activity).total_seconds() / 3600),
                    ),
                )
        return sorted(warnings, key=lambda w: w.deadline)
