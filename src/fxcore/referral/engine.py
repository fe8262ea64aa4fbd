"""Referral reward engine -- credits a referrer once for a referee's first transaction.

Consumes TransactionEvents with at-least-once delivery. Correctness rests on
two atomic storage operations, not on in-process state:
  - claim_first_transaction(): only one transaction id can ever be a
    referee's first; a redelivery of that same id re-enters the flow
  - create_reward(): the (referrer_id, referee_id) UNIQUE index turns a
    duplicate insert into IdempotencyConflict, which counts as success

Rewards are created `pending`, then credited through the wallet and moved to
`credited` or `failed`. retry_failed() re-attempts failed and stale pending
rewards out-of-band, and finishes first transactions that were claimed but
never rewarded because the conversion rate was unavailable. No failure in
this module reaches the transaction flow.
"""

import asyncio
import time
from decimal import Decimal
from enum import Enum

import structlog

from fxcore.config import ReferralSettings
from fxcore.data.referral_store import ReferralStore
from fxcore.exceptions import FxCoreError, IdempotencyConflict, TransientError
from fxcore.logging import get_logger
from fxcore.models import (
    CurrencyPair,
    Referral,
    ReferralReward,
    RewardStatus,
    TransactionEvent,
    validate_currency,
)
from fxcore.money import quantize_minor, to_decimal
from fxcore.observability import ErrorKind, ErrorObserver
from fxcore.rates.provider import RateProvider
from fxcore.referral.creditor import RewardCreditor
from fxcore.referral.events import TransactionEventSource

logger = get_logger(__name__)


class RewardOutcome(str, Enum):
    """What handling one TransactionEvent achieved."""

    CREATED = "created"
    ALREADY_REWARDED = "already_rewarded"
    NOT_ELIGIBLE = "not_eligible"
    TRANSIENT_FAILURE = "transient_failure"  # safe to redeliver
    ERROR = "error"


class ReferralRewardEngine:
    """Decides first-transaction eligibility and records the reward exactly once.

    Args:
        store: Referral links and rewards.
        provider: FX rates for converting the reward to the referrer's currency.
        settings: Reward policy.
        creditor: Wallet credit port; None leaves rewards pending for a later sweep.
        rate_timeout: Upper bound in seconds for the conversion rate fetch.
    """

    def __init__(
        self,
        store: ReferralStore,
        provider: RateProvider,
        settings: ReferralSettings,
        creditor: RewardCreditor | None = None,
        rate_timeout: float = 10.0,
    ) -> None:
        self._store = store
        self._provider = provider
        self._settings = settings
        self._creditor = creditor
        self._rate_timeout = rate_timeout
        self._observer = ErrorObserver("referral_reward_engine")
        self._retry_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._retry_task: asyncio.Task | None = None  # type: ignore[type-arg]

    @property
    def error_counts(self) -> dict[str, int]:
        return self._observer.counts

    def attach(self, source: TransactionEventSource) -> None:
        """Subscribe to transaction-completion events."""
        source.subscribe(self.on_transaction_completed)

    async def register_referral(
        self, referrer_id: str, referee_id: str, referrer_currency: str
    ) -> Referral:
        """Link a newly registered user to the user who referred them."""
        return await self._store.create_referral(referrer_id, referee_id, referrer_currency)

    # ──────────────────────────────────────────────
    # Event handling
    # ──────────────────────────────────────────────

    async def on_transaction_completed(self, event: TransactionEvent) -> None:
        """Subscription handler.

        Raises TransientError only to ask the event source for a
        redelivery; every other failure has already been recorded.
        """
        outcome = await self.handle(event)
        if outcome is RewardOutcome.TRANSIENT_FAILURE:
            raise TransientError(f"Reward for {event.transaction_id} needs redelivery")

    async def handle(self, event: TransactionEvent) -> RewardOutcome:
        """Process one event. Never raises."""
        with structlog.contextvars.bound_contextvars(
            transaction_id=event.transaction_id, user_id=event.user_id
        ):
            try:
                outcome = await self._process(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                kind = self._observer.record(e, "referral_reward_failed")
                if kind is ErrorKind.TRANSIENT:
                    return RewardOutcome.TRANSIENT_FAILURE
                return RewardOutcome.ERROR
            logger.debug("referral_event_handled", outcome=outcome.value)
            return outcome

    async def _process(self, event: TransactionEvent) -> RewardOutcome:
        amount = to_decimal(event.amount)
        currency = validate_currency(event.currency)

        referral = await self._store.get_referral(event.user_id)
        if referral is None:
            return RewardOutcome.NOT_ELIGIBLE
        if referral.first_transaction_id not in (None, event.transaction_id):
            return RewardOutcome.NOT_ELIGIBLE
        if amount <= 0 or amount < self._settings.min_transaction_amount:
            logger.info(
                "referral_transaction_below_minimum",
                amount=amount,
                minimum=self._settings.min_transaction_amount,
            )
            return RewardOutcome.NOT_ELIGIBLE

        is_first = await self._store.claim_first_transaction(
            event.user_id, event.transaction_id, event.completed_at, amount, currency
        )
        if not is_first:
            return RewardOutcome.NOT_ELIGIBLE

        return await self._reward_claimed(referral, amount, currency, event.transaction_id)

    async def _reward_claimed(
        self, referral: Referral, amount: Decimal, currency: str, transaction_id: str
    ) -> RewardOutcome:
        """Create and credit the reward for an already-claimed first transaction."""
        existing = await self._store.get_reward_for_pair(
            referral.referrer_id, referral.referee_id
        )
        if existing is not None:
            return RewardOutcome.ALREADY_REWARDED

        reward_amount = await self._compute_reward(amount, currency, referral)
        if reward_amount <= 0:
            logger.info("referral_reward_zero", referrer_id=referral.referrer_id)
            return RewardOutcome.NOT_ELIGIBLE

        try:
            reward = await self._store.create_reward(
                referrer_id=referral.referrer_id,
                referee_id=referral.referee_id,
                amount=reward_amount,
                currency=referral.referrer_currency,
                transaction_id=transaction_id,
            )
        except IdempotencyConflict as e:
            self._observer.record(e, "referral_reward_duplicate")
            return RewardOutcome.ALREADY_REWARDED

        await self._credit(reward)
        return RewardOutcome.CREATED

    async def _compute_reward(
        self, amount: Decimal, currency: str, referral: Referral
    ) -> Decimal:
        """percent * amount, converted to the referrer's currency, plus the fixed bonus."""
        share = amount * self._settings.reward_percent
        target = referral.referrer_currency
        if share > 0 and currency != target:
            try:
                snapshot = await asyncio.wait_for(
                    self._provider.get_rate(CurrencyPair(currency, target)),
                    timeout=self._rate_timeout,
                )
            except asyncio.TimeoutError as e:
                raise TransientError(f"Rate fetch timed out for {currency}/{target}") from e
            share = share * snapshot.rate
        return quantize_minor(share + self._settings.fixed_bonus, target)

    # ──────────────────────────────────────────────
    # Crediting
    # ──────────────────────────────────────────────

    async def _credit(self, reward: ReferralReward) -> bool:
        """Credit reward via the wallet and record the new status. Never raises."""
        if self._creditor is None:
            logger.info("referral_credit_deferred", reward_id=reward.id)
            return False
        try:
            reference = await self._creditor.credit(reward)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._observer.record(e, "referral_credit_failed", reward_id=reward.id)
            reason = str(e) if isinstance(e, FxCoreError) else type(e).__name__
            await self._store.set_reward_status(
                reward.id, reward.status, RewardStatus.FAILED, failure_reason=reason
            )
            return False

        moved = await self._store.set_reward_status(
            reward.id, reward.status, RewardStatus.CREDITED
        )
        if moved:
            logger.info(
                "referral_reward_credited",
                reward_id=reward.id,
                referrer_id=reward.referrer_id,
                amount=reward.amount,
                currency=reward.currency,
                reference=reference,
            )
        else:
            logger.warning("referral_reward_status_changed_concurrently", reward_id=reward.id)
        return moved

    async def retry_failed(self, now: float | None = None) -> int:
        """Finish rewards that did not complete while their event was handled.

        Two passes, each isolated per item so one bad record never ends the
        sweep:
          - claimed first transactions with no reward row (e.g. the rate
            fetch failed on every delivery) get their reward computed,
            created and credited now
          - failed and stale pending rewards are re-credited; rewards that
            already used max_credit_attempts are left failed

        Returns the number of rewards created or credited by this sweep.
        """
        async with self._retry_lock:
            completed = 0
            unrewarded = await self._store.list_unrewarded_referrals()
            for referral in unrewarded:
                with self._observer.guard(
                    "referral_reward_completion_failed", referee_id=referral.referee_id
                ):
                    outcome = await self._reward_claimed(
                        referral,
                        referral.first_transaction_amount,
                        referral.first_transaction_currency,
                        referral.first_transaction_id,
                    )
                    if outcome is RewardOutcome.CREATED:
                        completed += 1
                        logger.info(
                            "referral_reward_completed_late",
                            referee_id=referral.referee_id,
                            transaction_id=referral.first_transaction_id,
                        )

            candidates: list[ReferralReward] = []
            if self._creditor is not None:
                current = now if now is not None else time.time()
                stale_before = current - self._settings.retry_interval_seconds
                candidates = await self._store.list_rewards_by_status(RewardStatus.FAILED)
                candidates += await self._store.list_rewards_by_status(
                    RewardStatus.PENDING, older_than=stale_before
                )
            credited = 0
            for reward in candidates:
                if reward.attempts >= self._settings.max_credit_attempts:
                    continue
                with self._observer.guard("referral_credit_retry_failed", reward_id=reward.id):
                    if await self._credit(reward):
                        credited += 1
            logger.info(
                "referral_retry_sweep_complete",
                unrewarded=len(unrewarded),
                completed=completed,
                candidates=len(candidates),
                credited=credited,
            )
            return completed + credited

    async def start_retry_loop(self) -> None:
        if self._retry_task is not None:
            return
        self._stop_event.clear()
        self._retry_task = asyncio.create_task(self._retry_loop())

    async def stop(self) -> None:
        """Stop the retry loop, letting a running sweep finish."""
        self._stop_event.set()
        if self._retry_task is not None:
            await self._retry_task
            self._retry_task = None

    async def _retry_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._settings.retry_interval_seconds
                )
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                break
            try:
                await self.retry_failed()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._observer.record(e, "referral_retry_sweep_failed")
