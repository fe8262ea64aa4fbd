"""Wallet credit port for referral rewards.

The wallet service owns balances and the ledger. Each credit request carries
the reward id as its idempotency key, so re-crediting a reward after a lost
response cannot pay the referrer twice.
"""

from abc import ABC, abstractmethod

import httpx

from fxcore.config import WalletSettings
from fxcore.exceptions import FatalConfigError, TransientError, ValidationError
from fxcore.logging import get_logger
from fxcore.models import ReferralReward

logger = get_logger(__name__)


class RewardCreditor(ABC):
    """Credits a reward to the referrer's account."""

    @abstractmethod
    async def credit(self, reward: ReferralReward) -> str:
        """Credit reward and return the wallet's reference.

        Raises TransientError when the wallet could not be reached and
        ValidationError when it rejected the credit.
        """
        ...

    async def close(self) -> None:
        """Release network resources."""


class HttpWalletCreditor(RewardCreditor):
    """Credits rewards through the wallet service's REST API.

    Args:
        settings: Wallet endpoint and token.
        transport: Optional httpx transport (tests inject httpx.MockTransport).
    """

    def __init__(
        self,
        settings: WalletSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not settings.base_url:
            raise FatalConfigError("WALLET_BASE_URL is not configured")
        self._client = httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.timeout_seconds,
            transport=transport,
            headers={"Authorization": f"Bearer {settings.api_token.get_secret_value()}"},
        )

    async def credit(self, reward: ReferralReward) -> str:
        body = {
            "user_id": reward.referrer_id,
            "amount": str(reward.amount),
            "currency": reward.currency,
            "type": "referral_reward",
            "reference": reward.id,
            "description": f"Referral reward for {reward.referee_id}",
        }
        try:
            response = await self._client.post(
                "/credits", json=body, headers={"Idempotency-Key": reward.id}
            )
        except httpx.TimeoutException as e:
            raise TransientError("Wallet credit timed out") from e
        except httpx.HTTPError as e:
            raise TransientError(f"Wallet credit failed: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientError(f"Wallet returned {response.status_code}")
        if response.status_code >= 400:
            raise ValidationError(f"Wallet rejected credit: {response.status_code} {response.text}")

        reference = str(response.json().get("id", ""))
        logger.info("wallet_credit_accepted", reward_id=reward.id, reference=reference)
        return reference

    async def close(self) -> None:
        await self._client.aclose()
