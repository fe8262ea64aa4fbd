"""Rate alert monitor -- periodic FX threshold checks that trigger alerts.

Uses REST polling on a fixed interval; FX rates move slowly enough that
one-minute polling is sufficient.

Each tick walks Idle -> Fetching -> Evaluating -> Dispatching -> Idle:
  1. FETCH: load active rules, fetch one rate per distinct pair (bounded
     timeout each; a failed pair only disables its own rules this tick)
  2. EVALUATE: decide fire / re-arm / nothing per rule (hysteresis)
  3. DISPATCH: claim the rule with compare-and-swap, send on every channel
     the rule has, and release the claim if no channel delivered so the
     next tick retries

Ticks are single-flight. A rule's failure is recorded and isolated; it
never aborts the rest of the tick.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from enum import Enum

import structlog

from fxcore.alerts.evaluation import Transition, evaluate
from fxcore.config import MonitorSettings
from fxcore.data.rule_store import AlertRuleStore
from fxcore.exceptions import FatalConfigError, StateConflict, TransientError
from fxcore.logging import get_logger
from fxcore.models import AlertRule, CurrencyPair, RateSnapshot, TickResult
from fxcore.notifications.dispatcher import Channel, DispatchStatus, NotificationDispatcher
from fxcore.observability import ErrorObserver
from fxcore.rates.provider import RateProvider

logger = get_logger(__name__)


class MonitorState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    EVALUATING = "evaluating"
    DISPATCHING = "dispatching"
    HALTED = "halted"  # fatal startup error; terminal


@dataclass
class _PairBackoff:
    failures: int = 0
    retry_at: float = 0.0


class PairBackoff:
    """Per-pair exponential backoff across ticks for failing rate fetches.

    After n consecutive failures a pair is skipped until
    base * 2**(n-1) seconds (capped at max_delay) have passed.
    """

    def __init__(self, base_delay: float, max_delay: float) -> None:
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._state: dict[CurrencyPair, _PairBackoff] = {}

    def should_skip(self, pair: CurrencyPair, now: float) -> bool:
        entry = self._state.get(pair)
        return entry is not None and now < entry.retry_at

    def record_failure(self, pair: CurrencyPair, now: float) -> float:
        """Register a failure and return the delay until the next attempt."""
        entry = self._state.setdefault(pair, _PairBackoff())
        entry.failures += 1
        delay = min(self._base_delay * (2 ** (entry.failures - 1)), self._max_delay)
        entry.retry_at = now + delay
        return delay

    def record_success(self, pair: CurrencyPair) -> None:
        self._state.pop(pair, None)

    def failures(self, pair: CurrencyPair) -> int:
        entry = self._state.get(pair)
        return entry.failures if entry else 0


class RateAlertMonitor:
    """Singleton periodic job comparing live FX rates against alert rules.

    Args:
        rule_store: Persisted alert rules.
        provider: FX rate source.
        dispatcher: Push notification dispatcher.
        settings: Interval, worker count, timeouts and backoff.
    """

    def __init__(
        self,
        rule_store: AlertRuleStore,
        provider: RateProvider,
        dispatcher: NotificationDispatcher,
        settings: MonitorSettings,
    ) -> None:
        self._rule_store = rule_store
        self._provider = provider
        self._dispatcher = dispatcher
        self._settings = settings
        self._observer = ErrorObserver("rate_alert_monitor")
        self._backoff = PairBackoff(
            settings.backoff_base_seconds, settings.backoff_max_seconds
        )
        self._state = MonitorState.IDLE
        self._tick_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._last_result: TickResult | None = None

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def tick_in_progress(self) -> bool:
        return self._tick_lock.locked()

    @property
    def last_result(self) -> TickResult | None:
        return self._last_result

    @property
    def error_counts(self) -> dict[str, int]:
        return self._observer.counts

    # ──────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────

    async def start(self) -> None:
        """Validate configuration and begin ticking in the background.

        Raises FatalConfigError (and stays HALTED) if the provider is not
        configured; no tick is ever run in that case.
        """
        if self._state is MonitorState.HALTED:
            raise FatalConfigError("Rate alert monitor is halted")
        if self.is_running:
            logger.warning("rate_alert_monitor_already_running")
            return
        try:
            self._provider.ensure_configured()
        except FatalConfigError as e:
            self._state = MonitorState.HALTED
            self._observer.record(e, "rate_alert_monitor_halted")
            raise

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "rate_alert_monitor_started",
            interval_seconds=self._settings.interval_seconds,
            max_workers=self._settings.max_workers,
        )

    async def stop(self) -> None:
        """Stop scheduling ticks and wait for an in-flight tick to finish."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        # a manually triggered tick may still hold the lock
        async with self._tick_lock:
            pass
        logger.info("rate_alert_monitor_stopped")

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._observer.record(e, "rate_alert_tick_error")
                self._state = MonitorState.IDLE
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._settings.interval_seconds
                )
            except asyncio.TimeoutError:
                pass

    # ──────────────────────────────────────────────
    # Tick
    # ──────────────────────────────────────────────

    async def run_tick(self) -> TickResult | None:
        """Run one monitor tick.

        Returns None without doing anything if a tick is already running.
        """
        if self._state is MonitorState.HALTED:
            raise FatalConfigError("Rate alert monitor is halted")
        if self._tick_lock.locked():
            logger.warning("rate_alert_tick_skipped", reason="previous_tick_running")
            return None

        async with self._tick_lock:
            tick_id = uuid.uuid4().hex[:12]
            with structlog.contextvars.bound_contextvars(tick_id=tick_id):
                try:
                    result = await self._tick(tick_id)
                finally:
                    self._state = MonitorState.IDLE
            self._last_result = result
            return result

    async def _tick(self, tick_id: str) -> TickResult:
        result = TickResult(tick_id=tick_id)

        self._state = MonitorState.FETCHING
        rules = await self._rule_store.list_active()
        result.processed = len(rules)
        if not rules:
            logger.debug("rate_alert_no_active_rules")
            result.finished_at = time.time()
            return result

        pairs = {rule.pair for rule in rules}
        snapshots = await self._fetch_rates(pairs, result)

        self._state = MonitorState.EVALUATING
        actions: list[tuple[AlertRule, RateSnapshot, Transition]] = []
        for rule in rules:
            snapshot = snapshots.get(rule.pair)
            if snapshot is None:
                continue
            try:
                transition = evaluate(rule, snapshot.rate)
            except Exception as e:
                result.errors += 1
                self._observer.record(
                    e, "rule_evaluation_failed", rule_id=rule.id, pair=str(rule.pair)
                )
                continue
            if transition is not Transition.NONE:
                actions.append((rule, snapshot, transition))

        self._state = MonitorState.DISPATCHING
        self._dispatcher.begin_tick(tick_id)
        semaphore = asyncio.Semaphore(self._settings.max_workers)

        async def _bounded(rule: AlertRule, snapshot: RateSnapshot, transition: Transition) -> None:
            async with semaphore:
                try:
                    await self._apply(rule, snapshot, transition, result)
                except Exception as e:
                    result.errors += 1
                    self._observer.record(e, "rule_apply_failed", rule_id=rule.id)

        await asyncio.gather(*(_bounded(r, s, t) for r, s, t in actions))

        result.finished_at = time.time()
        logger.info(
            "rate_alert_tick_complete",
            processed=result.processed,
            pairs=len(pairs),
            notified=result.notified,
            rearmed=result.rearmed,
            errors=result.errors,
            push_failed=result.push_failed,
            email_failed=result.email_failed,
            skipped_pairs=result.skipped_pairs,
            duration_seconds=round(result.finished_at - result.started_at, 3),
        )
        return result

    async def _fetch_rates(
        self, pairs: set[CurrencyPair], result: TickResult
    ) -> dict[CurrencyPair, RateSnapshot]:
        """Fetch one snapshot per pair concurrently; failures drop only that pair."""
        now = time.time()
        to_fetch: list[CurrencyPair] = []
        for pair in sorted(pairs, key=str):
            if self._backoff.should_skip(pair, now):
                result.skipped_pairs.append(str(pair))
                logger.info(
                    "rate_fetch_backing_off",
                    pair=str(pair),
                    failures=self._backoff.failures(pair),
                )
            else:
                to_fetch.append(pair)

        outcomes = await asyncio.gather(
            *(self._fetch_one(pair) for pair in to_fetch), return_exceptions=True
        )

        snapshots: dict[CurrencyPair, RateSnapshot] = {}
        for pair, outcome in zip(to_fetch, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                delay = self._backoff.record_failure(pair, time.time())
                result.skipped_pairs.append(str(pair))
                self._observer.record(
                    outcome, "rate_fetch_failed", pair=str(pair), retry_in_seconds=delay
                )
                continue
            self._backoff.record_success(pair)
            snapshots[pair] = outcome
        return snapshots

    async def _fetch_one(self, pair: CurrencyPair) -> RateSnapshot:
        try:
            snapshot = await asyncio.wait_for(
                self._provider.get_rate(pair),
                timeout=self._settings.fetch_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise TransientError(f"Rate fetch timed out for {pair}") from e
        if snapshot.pair != pair:
            raise TransientError(f"Provider answered {snapshot.pair} for {pair}")
        return snapshot

    async def _apply(
        self,
        rule: AlertRule,
        snapshot: RateSnapshot,
        transition: Transition,
        result: TickResult,
    ) -> None:
        if transition is Transition.REARM:
            updated = await self._rule_store.compare_and_set_state(
                rule,
                armed=True,
                last_triggered_at=rule.last_triggered_at,
                notified_count=rule.notified_count,
            )
            if updated is None:
                raise StateConflict(f"Rule {rule.id} changed before re-arm")
            result.rearmed += 1
            logger.info("alert_rule_rearmed", rule_id=rule.id, rate=snapshot.rate)
            return

        claimed = await self._rule_store.compare_and_set_state(
            rule,
            armed=False,
            last_triggered_at=time.time(),
            notified_count=rule.notified_count + 1,
        )
        if claimed is None:
            raise StateConflict(f"Rule {rule.id} changed before firing")

        logger.info(
            "alert_triggered",
            rule_id=rule.id,
            user_id=rule.user_id,
            pair=str(rule.pair),
            rate=snapshot.rate,
            threshold=rule.threshold_rate,
            direction=rule.direction.value,
        )
        dispatched = await self._dispatcher.dispatch(claimed, snapshot)

        for delivery in dispatched.channels:
            if delivery.status in (DispatchStatus.FAILED, DispatchStatus.EXPIRED):
                result.errors += 1
                if delivery.channel is Channel.EMAIL:
                    result.email_failed += 1
                else:
                    result.push_failed += 1
        push = dispatched.channel(Channel.PUSH)
        if push is not None and push.status is DispatchStatus.EXPIRED:
            await self._rule_store.clear_subscription(rule.id)

        if dispatched.status is DispatchStatus.SENT:
            result.notified += 1
        elif dispatched.status is DispatchStatus.FAILED:
            released = await self._rule_store.compare_and_set_state(
                claimed,
                armed=True,
                last_triggered_at=rule.last_triggered_at,
                notified_count=rule.notified_count,
            )
            if released is None:
                logger.warning("alert_release_conflict", rule_id=rule.id)
            else:
                logger.info("alert_released_for_retry", rule_id=rule.id)
