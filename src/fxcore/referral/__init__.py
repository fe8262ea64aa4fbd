"""Referral rewards -- event subscription, eligibility, idempotent crediting."""

from fxcore.referral.creditor import HttpWalletCreditor, RewardCreditor
from fxcore.referral.engine import ReferralRewardEngine, RewardOutcome
from fxcore.referral.events import QueueEventSource, TransactionEventSource

__all__ = [
    "HttpWalletCreditor",
    "QueueEventSource",
    "ReferralRewardEngine",
    "RewardCreditor",
    "RewardOutcome",
    "TransactionEventSource",
]
