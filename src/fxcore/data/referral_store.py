"""Typed access layer for referrals and referral rewards.

The (referrer_id, referee_id) UNIQUE index is the idempotency anchor:
create_reward() inserts unconditionally and translates the constraint
violation into IdempotencyConflict. There is no check-then-insert window
for two concurrent deliveries of the same event to slip through.

CRITICAL: Amounts are stored as TEXT in SQLite, restored as Decimal on read.
"""

import sqlite3
import time
import uuid
from decimal import Decimal

import aiosqlite

from fxcore.data.database import Database
from fxcore.exceptions import IdempotencyConflict, ValidationError
from fxcore.logging import get_logger
from fxcore.models import Referral, ReferralReward, RewardStatus, validate_currency

logger = get_logger(__name__)

_REFERRAL_COLUMNS = (
    "referee_id, referrer_id, referrer_currency, first_transaction_id, "
    "first_transaction_at, first_transaction_amount, first_transaction_currency, created_at"
)

_REWARD_COLUMNS = (
    "id, referrer_id, referee_id, amount, currency, status, transaction_id, "
    "created_at, credited_at, failure_reason, attempts"
)


def _row_to_referral(row: aiosqlite.Row | tuple) -> Referral:
    return Referral(
        referee_id=row[0],
        referrer_id=row[1],
        referrer_currency=row[2],
        first_transaction_id=row[3],
        first_transaction_at=row[4],
        first_transaction_amount=Decimal(row[5]) if row[5] is not None else None,
        first_transaction_currency=row[6],
        created_at=row[7],
    )


def _row_to_reward(row: aiosqlite.Row | tuple) -> ReferralReward:
    return ReferralReward(
        id=row[0],
        referrer_id=row[1],
        referee_id=row[2],
        amount=Decimal(row[3]),
        currency=row[4],
        status=RewardStatus(row[5]),
        transaction_id=row[6],
        created_at=row[7],
        credited_at=row[8],
        failure_reason=row[9],
        attempts=row[10],
    )


class ReferralStore:
    """Async SQLite store for Referral links and ReferralReward records."""

    def __init__(self, database: Database) -> None:
        self._database = database

    # ──────────────────────────────────────────────
    # Referrals
    # ──────────────────────────────────────────────

    async def create_referral(
        self, referrer_id: str, referee_id: str, referrer_currency: str
    ) -> Referral:
        """Link referee to referrer. A referee can only ever have one referrer."""
        if referrer_id == referee_id:
            raise ValidationError("A user cannot refer themselves")
        referral = Referral(
            referee_id=referee_id,
            referrer_id=referrer_id,
            referrer_currency=validate_currency(referrer_currency),
        )
        try:
            await self._database.execute_write(
                "INSERT INTO referrals "
                "(referee_id, referrer_id, referrer_currency, created_at) "
                "VALUES (?, ?, ?, ?)",
                (
                    referral.referee_id,
                    referral.referrer_id,
                    referral.referrer_currency,
                    referral.created_at,
                ),
            )
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"User {referee_id} already has a referrer") from e
        logger.info("referral_registered", referrer_id=referrer_id, referee_id=referee_id)
        return referral

    async def get_referral(self, referee_id: str) -> Referral | None:
        cursor = await self._database.db.execute(
            f"SELECT {_REFERRAL_COLUMNS} FROM referrals WHERE referee_id = ?",
            (referee_id,),
        )
        row = await cursor.fetchone()
        return _row_to_referral(row) if row else None

    async def claim_first_transaction(
        self,
        referee_id: str,
        transaction_id: str,
        completed_at: float,
        amount: Decimal,
        currency: str,
    ) -> bool:
        """Atomically record transaction_id as the referee's first transaction.

        The amount and currency are stored with the claim so a reward that
        could not be computed right away can be finished later from the
        referral row alone.

        Returns True if this transaction is (or already was) the first one,
        False if a different transaction claimed it earlier.
        """
        await self._database.execute_write(
            "UPDATE referrals SET first_transaction_id = ?, first_transaction_at = ?, "
            "first_transaction_amount = ?, first_transaction_currency = ? "
            "WHERE referee_id = ? AND first_transaction_id IS NULL",
            (transaction_id, completed_at, str(amount), currency, referee_id),
        )
        cursor = await self._database.db.execute(
            "SELECT first_transaction_id FROM referrals WHERE referee_id = ?",
            (referee_id,),
        )
        row = await cursor.fetchone()
        return row is not None and row[0] == transaction_id

    async def list_unrewarded_referrals(self) -> list[Referral]:
        """Referrals whose first transaction is claimed but have no reward row yet.

        These are left behind when the reward could not be computed while
        the event was being handled (e.g. the rate provider was down).
        """
        sql = (
            "SELECT r.referee_id, r.referrer_id, r.referrer_currency, "
            "r.first_transaction_id, r.first_transaction_at, r.first_transaction_amount, "
            "r.first_transaction_currency, r.created_at "
            "FROM referrals r LEFT JOIN referral_rewards w "
            "ON w.referrer_id = r.referrer_id AND w.referee_id = r.referee_id "
            "WHERE r.first_transaction_id IS NOT NULL "
            "AND r.first_transaction_amount IS NOT NULL AND w.id IS NULL "
            "ORDER BY r.first_transaction_at"
        )
        cursor = await self._database.db.execute(sql)
        rows = await cursor.fetchall()
        return [_row_to_referral(row) for row in rows]

    # ──────────────────────────────────────────────
    # Rewards
    # ──────────────────────────────────────────────

    async def create_reward(
        self,
        referrer_id: str,
        referee_id: str,
        amount: Decimal,
        currency: str,
        transaction_id: str,
    ) -> ReferralReward:
        """Insert a pending reward.

        Raises IdempotencyConflict when a reward for the pair already exists.
        """
        reward = ReferralReward(
            id=str(uuid.uuid4()),
            referrer_id=referrer_id,
            referee_id=referee_id,
            amount=amount,
            currency=currency,
            status=RewardStatus.PENDING,
            transaction_id=transaction_id,
            created_at=time.time(),
        )
        try:
            await self._database.execute_write(
                f"INSERT INTO referral_rewards ({_REWARD_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    reward.id,
                    reward.referrer_id,
                    reward.referee_id,
                    str(reward.amount),
                    reward.currency,
                    reward.status.value,
                    reward.transaction_id,
                    reward.created_at,
                    None,
                    None,
                    0,
                ),
            )
        except sqlite3.IntegrityError as e:
            raise IdempotencyConflict(
                f"Reward already exists for referrer={referrer_id} referee={referee_id}"
            ) from e
        logger.info(
            "referral_reward_created",
            reward_id=reward.id,
            referrer_id=referrer_id,
            referee_id=referee_id,
            amount=amount,
            currency=currency,
        )
        return reward

    async def get_reward(self, reward_id: str) -> ReferralReward | None:
        cursor = await self._database.db.execute(
            f"SELECT {_REWARD_COLUMNS} FROM referral_rewards WHERE id = ?", (reward_id,)
        )
        row = await cursor.fetchone()
        return _row_to_reward(row) if row else None

    async def get_reward_for_pair(
        self, referrer_id: str, referee_id: str
    ) -> ReferralReward | None:
        cursor = await self._database.db.execute(
            f"SELECT {_REWARD_COLUMNS} FROM referral_rewards "
            "WHERE referrer_id = ? AND referee_id = ?",
            (referrer_id, referee_id),
        )
        row = await cursor.fetchone()
        return _row_to_reward(row) if row else None

    async def list_rewards_by_status(
        self, status: RewardStatus, older_than: float | None = None
    ) -> list[ReferralReward]:
        """Return rewards in status, optionally only those created before older_than."""
        if older_than is None:
            cursor = await self._database.db.execute(
                f"SELECT {_REWARD_COLUMNS} FROM referral_rewards WHERE status = ? "
                "ORDER BY created_at",
                (status.value,),
            )
        else:
            cursor = await self._database.db.execute(
                f"SELECT {_REWARD_COLUMNS} FROM referral_rewards "
                "WHERE status = ? AND created_at < ? ORDER BY created_at",
                (status.value, older_than),
            )
        rows = await cursor.fetchall()
        return [_row_to_reward(row) for row in rows]

    async def set_reward_status(
        self,
        reward_id: str,
        expected: RewardStatus,
        new: RewardStatus,
        failure_reason: str | None = None,
    ) -> bool:
        """Move a reward from expected to new status and count the attempt.

        Returns False if the reward was not in the expected status.
        """
        credited_at = time.time() if new is RewardStatus.CREDITED else None
        rowcount = await self._database.execute_write(
            "UPDATE referral_rewards SET status = ?, credited_at = COALESCE(?, credited_at), "
            "failure_reason = ?, attempts = attempts + 1 "
            "WHERE id = ? AND status = ?",
            (new.value, credited_at, failure_reason, reward_id, expected.value),
        )
        return rowcount == 1

    async def count_rewards(self, referrer_id: str, referee_id: str) -> int:
        cursor = await self._database.db.execute(
            "SELECT COUNT(*) FROM referral_rewards WHERE referrer_id = ? AND referee_id = ?",
            (referrer_id, referee_id),
        )
        row = await cursor.fetchone()
        return int(row[0]) if row else 0
