"""Persistence layer.

Provides the aiosqlite database manager and typed stores for alert rules,
referral links and referral rewards.
"""

from fxcore.data.database import Database
from fxcore.data.referral_store import ReferralStore
from fxcore.data.rule_store import AlertRuleStore

__all__ = ["AlertRuleStore", "Database", "ReferralStore"]
