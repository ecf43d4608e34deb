"""Periodic driver for the background sync jobs.

The ``Scheduler`` owns a queue of tick requests and its own tick counter.
Each tick runs the configured jobs sequentially. A job that raises is
logged, recorded in ``sync_checkpoints``, and does not stop the jobs after
it or the ticks after it. Ticks fire every ``interval_seconds`` or as soon
as a tick is requested, whichever comes first.
"""

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from market_ledger.db.repository import LedgerRepository

logger = logging.getLogger(__name__)

_STOP = "__stop__"
_ERROR_TEXT_LIMIT = 500


@dataclass(frozen=True)
class Job:
    """A named background job.

    Args:
        name: Stable job name, used in logs and checkpoints.
        run: Coroutine function performing one run of the job.

    """

    name: str
    run: Callable[[], Awaitable[object]]


@dataclass(frozen=True)
class TickResult:
    """Outcome of one scheduler tick."""

    tick: int
    reason: str
    ok: tuple[str, ...]
    failed: tuple[str, ...]


class Scheduler:
    """Run background jobs on a fixed interval with per-job failure isolation.

    Args:
        jobs: Jobs in execution order.
        interval_seconds: Seconds between ticks.
        repository: Repository used to record job checkpoints, if any.

    """

    def __init__(
        self,
        jobs: Sequence[Job],
        *,
        interval_seconds: int,
        repository: LedgerRepository | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            jobs: Jobs in execution order.
            interval_seconds: Seconds between ticks.
            repository: Repository used to record job checkpoints, if any.

        """
        if interval_seconds <= 0:
            msg = f"interval_seconds must be positive, got {interval_seconds}"
            raise ValueError(msg)
        self._jobs = tuple(jobs)
        self._interval = interval_seconds
        self._repo = repository
        self._requests: asyncio.Queue[str] = asyncio.Queue()
        self._tick = 0
        self._running = False
        self._shutdown = False

    @property
    def tick_count(self) -> int:
        """Return the number of ticks run so far."""
        return self._tick

    @property
    def is_running(self) -> bool:
        """Return True while ``run`` is looping."""
        return self._running

    def request_tick(self, reason: str = "manual") -> None:
        """Ask the running loop to tick now instead of waiting for the interval."""
        self._requests.put_nowait(reason)

    def stop(self) -> None:
        """Ask the running loop to exit after the current tick."""
        logger.info("Scheduler stop requested")
        self._shutdown = True
        self._requests.put_nowait(_STOP)

    async def run(self, *, max_ticks: int | None = None, handle_signals: bool = False) -> None:
        """Tick until stopped, starting with an immediate first tick.

        Args:
            max_ticks: Stop after this many ticks; run forever when ``None``.
            handle_signals: Install SIGINT/SIGTERM handlers that call ``stop``.

        """
        if handle_signals:
            loop = asyncio.get_running_loop()
            loop.add_signal_handler(signal.SIGINT, self.stop)
            loop.add_signal_handler(signal.SIGTERM, self.stop)

        logger.info(
            "Scheduler started: %d jobs every %ds (%s)",
            len(self._jobs),
            self._interval,
            ", ".join(job.name for job in self._jobs),
        )
        self._running = True
        reason = "startup"
        try:
            while not self._shutdown:
                await self.run_tick(reason)
                if max_ticks is not None and self._tick >= max_ticks:
                    break
                reason = await self._next_request()
                if reason == _STOP:
                    break
        finally:
            self._running = False
            logger.info("Scheduler stopped after %d ticks", self._tick)

    async def _next_request(self) -> str:
        """Wait for a tick request or the interval to elapse."""
        try:
            return await asyncio.wait_for(self._requests.get(), timeout=self._interval)
        except TimeoutError:
            return "interval"

    async def run_tick(self, reason: str = "manual") -> TickResult:
        """Run every job once, in order, isolating failures.

        Args:
            reason: Why this tick fired, for the heartbeat log.

        Returns:
            Which jobs succeeded and which failed.

        """
        self._tick += 1
        ok: list[str] = []
        failed: list[str] = []
        for job in self._jobs:
            error: str | None = None
            try:
                await job.run()
            except Exception as exc:
                logger.exception("Job %s failed on tick %d", job.name, self._tick)
                error = f"{type(exc).__name__}: {exc}"[:_ERROR_TEXT_LIMIT]
                failed.append(job.name)
            else:
                ok.append(job.name)
            await self._checkpoint(job.name, error)

        logger.info(
            "[SCHEDULER] tick=%d reason=%s ok=%d failed=%d%s",
            self._tick,
            reason,
            len(ok),
            len(failed),
            f" failed_jobs={','.join(failed)}" if failed else "",
        )
        return TickResult(tick=self._tick, reason=reason, ok=tuple(ok), failed=tuple(failed))

    async def _checkpoint(self, job_name: str, error: str | None) -> None:
        """Record a job outcome; a bookkeeping failure is logged, never raised."""
        if self._repo is None:
            return
        try:
            await self._repo.record_job_result(job_name, error)
        except Exception:
            logger.exception("Failed to record checkpoint for job %s", job_name)
