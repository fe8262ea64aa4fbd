"""Typed access layer for persisted alert rules.

User-facing operations (create, threshold edits, activation) and the
monitor's state transitions both bump the row's version. The monitor only
writes through compare_and_set_state(), so a transition computed from a
stale read is rejected instead of silently overwriting a newer one.

CRITICAL: Rates are stored as TEXT in SQLite, restored as Decimal on read.
"""

import json
import uuid
from dataclasses import replace
from decimal import Decimal
from typing import Any

import aiosqlite

from fxcore.data.database import Database
from fxcore.exceptions import ValidationError
from fxcore.logging import get_logger
from fxcore.models import AlertDirection, AlertRule, CurrencyPair
from fxcore.money import to_decimal

logger = get_logger(__name__)

_COLUMNS = (
    "id, user_id, base_currency, quote_currency, threshold_rate, direction, "
    "active, armed, last_triggered_at, push_subscription, notified_count, "
    "version, created_at, email"
)


def _row_to_rule(row: aiosqlite.Row | tuple) -> AlertRule:
    subscription = json.loads(row[9]) if row[9] else None
    return AlertRule(
        id=row[0],
        user_id=row[1],
        pair=CurrencyPair(row[2], row[3]),
        threshold_rate=Decimal(row[4]),
        direction=AlertDirection(row[5]),
        active=bool(row[6]),
        armed=bool(row[7]),
        last_triggered_at=row[8],
        push_subscription=subscription,
        notified_count=row[10],
        version=row[11],
        created_at=row[12],
        email=row[13],
    )


class AlertRuleStore:
    """Async SQLite store for AlertRule records.

    Usage:
        async with Database("data/fxcore.db") as database:
            store = AlertRuleStore(database)
            rule = await store.create("user-1", CurrencyPair("USD", "NGN"),
                                      Decimal("1500"), AlertDirection.ABOVE)
    """

    def __init__(self, database: Database) -> None:
        self._database = database

    # ──────────────────────────────────────────────
    # User-owned writes
    # ──────────────────────────────────────────────

    async def create(
        self,
        user_id: str,
        pair: CurrencyPair,
        threshold_rate: Decimal,
        direction: AlertDirection,
        push_subscription: dict[str, Any] | None = None,
        email: str | None = None,
    ) -> AlertRule:
        """Insert a new active, armed rule.

        The rule is delivered by push when push_subscription is set and by
        email when email is set.
        """
        threshold = to_decimal(threshold_rate, "threshold_rate")
        if threshold <= 0:
            raise ValidationError("threshold_rate must be positive")

        rule = AlertRule(
            id=str(uuid.uuid4()),
            user_id=user_id,
            pair=pair,
            threshold_rate=threshold,
            direction=AlertDirection(direction),
            push_subscription=push_subscription,
            email=email or None,
        )
        await self._database.execute_write(
            f"INSERT INTO alert_rules ({_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                rule.id,
                rule.user_id,
                rule.pair.base,
                rule.pair.quote,
                str(rule.threshold_rate),
                rule.direction.value,
                1,
                1,
                None,
                json.dumps(push_subscription) if push_subscription else None,
                0,
                0,
                rule.created_at,
                rule.email,
            ),
        )
        logger.info(
            "alert_rule_created",
            rule_id=rule.id,
            user_id=user_id,
            pair=str(pair),
            threshold=rule.threshold_rate,
            direction=rule.direction.value,
        )
        return rule

    async def update_threshold(
        self,
        rule_id: str,
        threshold_rate: Decimal,
        direction: AlertDirection | None = None,
    ) -> bool:
        """Change the threshold (and optionally direction); re-arms the rule.

        Returns False when the rule does not exist.
        """
        threshold = to_decimal(threshold_rate, "threshold_rate")
        if threshold <= 0:
            raise ValidationError("threshold_rate must be positive")

        if direction is None:
            rowcount = await self._database.execute_write(
                "UPDATE alert_rules SET threshold_rate = ?, armed = 1, "
                "version = version + 1 WHERE id = ?",
                (str(threshold), rule_id),
            )
        else:
            rowcount = await self._database.execute_write(
                "UPDATE alert_rules SET threshold_rate = ?, direction = ?, armed = 1, "
                "version = version + 1 WHERE id = ?",
                (str(threshold), AlertDirection(direction).value, rule_id),
            )
        return rowcount == 1

    async def set_active(self, rule_id: str, active: bool) -> bool:
        """Enable or disable a rule. Returns False when it does not exist."""
        rowcount = await self._database.execute_write(
            "UPDATE alert_rules SET active = ?, version = version + 1 WHERE id = ?",
            (1 if active else 0, rule_id),
        )
        return rowcount == 1

    async def delete(self, rule_id: str) -> bool:
        rowcount = await self._database.execute_write(
            "DELETE FROM alert_rules WHERE id = ?", (rule_id,)
        )
        return rowcount == 1

    # ──────────────────────────────────────────────
    # Monitor-owned writes
    # ──────────────────────────────────────────────

    async def compare_and_set_state(
        self,
        rule: AlertRule,
        *,
        armed: bool,
        last_triggered_at: float | None,
        notified_count: int,
    ) -> AlertRule | None:
        """Write the monitor-owned fields if the row still has rule.version.

        Returns the updated rule, or None when another writer got there
        first (the caller must drop its transition).
        """
        rowcount = await self._database.execute_write(
            "UPDATE alert_rules SET armed = ?, last_triggered_at = ?, "
            "notified_count = ?, version = version + 1 "
            "WHERE id = ? AND version = ?",
            (
                1 if armed else 0,
                last_triggered_at,
                notified_count,
                rule.id,
                rule.version,
            ),
        )
        if rowcount != 1:
            return None
        return replace(
            rule,
            armed=armed,
            last_triggered_at=last_triggered_at,
            notified_count=notified_count,
            version=rule.version + 1,
        )

    async def clear_subscription(self, rule_id: str) -> None:
        """Drop an expired push subscription."""
        await self._database.execute_write(
            "UPDATE alert_rules SET push_subscription = NULL, version = version + 1 "
            "WHERE id = ?",
            (rule_id,),
        )
        logger.info("push_subscription_cleared", rule_id=rule_id)

    # ──────────────────────────────────────────────
    # Read methods
    # ──────────────────────────────────────────────

    async def get(self, rule_id: str) -> AlertRule | None:
        cursor = await self._database.db.execute(
            f"SELECT {_COLUMNS} FROM alert_rules WHERE id = ?", (rule_id,)
        )
        row = await cursor.fetchone()
        return _row_to_rule(row) if row else None

    async def list_active(self) -> list[AlertRule]:
        """Return every active rule, oldest first."""
        cursor = await self._database.db.execute(
            f"SELECT {_COLUMNS} FROM alert_rules WHERE active = 1 ORDER BY created_at"
        )
        rows = await cursor.fetchall()
        return [_row_to_rule(row) for row in rows]

    async def list_for_user(self, user_id: str) -> list[AlertRule]:
        cursor = await self._database.db.execute(
            f"SELECT {_COLUMNS} FROM alert_rules WHERE user_id = ? ORDER BY created_at",
            (user_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_rule(row) for row in rows]

