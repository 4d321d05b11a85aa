"""
Billing Scheduler

Periodic worker that finds calls due for their next billing unit and runs a
MeteringEngine step for each, on a bounded thread pool.

The loop is paced by a ticker: tick k starts ``k * poll_interval`` after the
loop started, and the cycle for tick k bills at ``anchor + k * poll_interval``
where ``anchor`` is the clock reading taken once at startup. Consecutive
cycles are therefore exactly one interval apart in the timestamps the
candidate query compares, however late each thread wakes up. A cycle that
overruns skips the ticks it missed.

The loop is stopped through a cancellation token, a ``threading.Event``.
Setting the token stops new cycles from starting; a batch that is already
running is always allowed to finish, so no step is abandoned between debit
and ledger commit. ``run_once`` executes a single cycle for callers that want
to drive the loop themselves.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from threading import Event, Thread
from typing import Any, Callable, Dict, List, Optional
import time
import structlog

from ..config import BillingConfig
from ..persistence.models import CallRecord, to_timestamp, utcnow
from ..persistence.repository import CallLedger
from .metering import MeteringEngine, StepOutcome, StepResult

logger = structlog.get_logger()


@dataclass
class CycleResult:
    """What one scheduler cycle did."""
    started_at: datetime
    candidates: int = 0
    results: List[StepResult] = field(default_factory=list)

    def count(self, outcome: StepOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": to_timestamp(self.started_at),
            "candidates": self.candidates,
            "outcomes": {o.value: self.count(o) for o in StepOutcome if self.count(o)},
        }


class BillingScheduler:
    """
    Drives billing cycles.

    Several schedulers (threads or replicas) may share one store; per-call
    claims and per-wallet conditional debits keep them from double-billing.
    """

    def __init__(
        self,
        engine: MeteringEngine,
        calls: CallLedger,
        config: Optional[BillingConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        stop_event: Optional[Event] = None,
    ):
        self.engine = engine
        self.calls = calls
        self.config = config or BillingConfig()
        self.clock = clock or utcnow
        self._stop = stop_event or Event()
        self._thread: Optional[Thread] = None
        self._pool: Optional[ThreadPoolExecutor] = None
        self.last_cycle: Optional[CycleResult] = None
        self.cycles_run = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _new_pool(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(
            max_workers=self.config.max_concurrency,
            thread_name_prefix="billing-step",
        )

    def run_once(self, now: Optional[datetime] = None) -> CycleResult:
        """
        Run one cycle: select candidates, bill each, wait for all of them.

        Candidate discovery errors propagate to the caller. Errors inside a
        single call's step are contained and reported as StepOutcome.ERROR.
        Inside ``run`` the loop's pool is reused; otherwise a pool is built
        for this cycle only.
        """
        now = now or self.clock()
        candidates = self.calls.find_billable(
            now,
            self.config.poll_interval,
            self.config.batch_size,
        )
        cycle = CycleResult(started_at=now, candidates=len(candidates))
        if not candidates:
            return self._record(cycle)

        if self._pool is not None:
            cycle.results = self._bill_all(self._pool, candidates, now)
        else:
            with self._new_pool() as pool:
                cycle.results = self._bill_all(pool, candidates, now)

        logger.info("billing_cycle_completed", **cycle.to_dict())
        return self._record(cycle)

    def _bill_all(
        self,
        pool: ThreadPoolExecutor,
        candidates: List[CallRecord],
        now: datetime,
    ) -> List[StepResult]:
        futures = [pool.submit(self._bill_isolated, call, now) for call in candidates]
        return [future.result() for future in futures]

    def _bill_isolated(self, call: CallRecord, now: datetime) -> StepResult:
        try:
            return self.engine.bill(call, now)
        except Exception as e:
            logger.error("billing_step_failed", call_id=call.call_id, error=str(e))
            return self.engine.record_error(call, now, e)

    def _record(self, cycle: CycleResult) -> CycleResult:
        self.last_cycle = cycle
        self.cycles_run += 1
        return cycle

    def _backoff_seconds(self, failures: int) -> float:
        delay_ms = self.config.query_backoff_ms * (2 ** (failures - 1))
        return min(delay_ms, self.config.max_backoff_ms) / 1000.0

    def run(self, stop: Optional[Event] = None) -> None:
        """Run cycles until the cancellation token is set."""
        stop = stop or self._stop
        interval = self.config.poll_interval
        interval_s = interval.total_seconds()
        anchor = self.clock()
        started = time.monotonic()
        tick = 0
        failures = 0

        logger.info(
            "billing_scheduler_started",
            poll_interval_ms=self.config.poll_interval_ms,
            batch_size=self.config.batch_size,
            max_concurrency=self.config.max_concurrency,
        )

        self._pool = self._new_pool()
        try:
            while not stop.is_set():
                try:
                    self.run_once(anchor + tick * interval)
                    failures = 0
                    next_tick = tick + 1
                except Exception as e:
                    failures += 1
                    delay = self._backoff_seconds(failures)
                    logger.error("candidate_query_failed", error=str(e), attempt=failures, retry_in_s=delay)
                    if stop.wait(delay):
                        break
                    # The failed tick billed nothing, so it may run again.
                    next_tick = tick

                elapsed_ticks = int((time.monotonic() - started) / interval_s)
                tick = max(next_tick, elapsed_ticks)
                stop.wait(max(0.0, started + tick * interval_s - time.monotonic()))
        finally:
            self._pool.shutdown(wait=True)
            self._pool = None

        logger.info("billing_scheduler_stopped", cycles_run=self.cycles_run)

    def start(self) -> None:
        """Run the loop on a background thread."""
        if self.running:
            return
        self._stop.clear()
        self._thread = Thread(target=self.run, name="billing-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal cancellation and wait for the in-flight cycle to finish."""
        self._stop.set()
        if self._thread is None:
            return
        self._thread.join(timeout)
        if self._thread.is_alive():
            # Keep the handle so start() cannot launch a second loop.
            logger.warning("billing_scheduler_stop_timeout", timeout=timeout)
            return
        self._thread = None
