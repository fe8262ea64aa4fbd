"""Tests for QueueEventSource: non-blocking publish and at-least-once redelivery."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from fxcore.models import TransactionEvent
from fxcore.referral.events import QueueEventSource

EVENT = TransactionEvent(
    user_id="bob", amount=Decimal("100"), currency="USD", transaction_id="tx-1", completed_at=1.0
)


class TestDelivery:
    @pytest.mark.asyncio
    async def test_publish_does_not_run_handlers_inline(self) -> None:
        calls: list[str] = []

        async def handler(event: TransactionEvent) -> None:
            calls.append(event.transaction_id)

        source = QueueEventSource()
        source.subscribe(handler)
        source.publish(EVENT)
        assert calls == []
        assert source.pending == 1

        await source.start()
        await source.drain()
        assert calls == ["tx-1"]
        await source.stop()

    @pytest.mark.asyncio
    async def test_failed_handler_gets_redelivery(self) -> None:
        attempts: list[int] = []

        async def flaky(event: TransactionEvent) -> None:
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("try again")

        source = QueueEventSource(max_deliveries=3, retry_delay=0)
        source.subscribe(flaky)
        await source.start()
        source.publish(EVENT)
        await source.drain()
        await source.stop()

        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_deliveries(self) -> None:
        attempts: list[int] = []

        async def broken(event: TransactionEvent) -> None:
            attempts.append(1)
            raise RuntimeError("always")

        source = QueueEventSource(max_deliveries=3, retry_delay=0)
        source.subscribe(broken)
        await source.start()
        source.publish(EVENT)
        await source.drain()
        await source.stop()

        assert len(attempts) == 3
        assert source.pending == 0

    @pytest.mark.asyncio
    async def test_one_failing_handler_does_not_skip_others(self) -> None:
        seen: list[str] = []

        async def broken(event: TransactionEvent) -> None:
            raise RuntimeError("always")

        async def healthy(event: TransactionEvent) -> None:
            seen.append(event.transaction_id)

        source = QueueEventSource(max_deliveries=1)
        source.subscribe(broken)
        source.subscribe(healthy)
        await source.start()
        source.publish(EVENT)
        await source.stop()

        assert seen == ["tx-1"]

    @pytest.mark.asyncio
    async def test_stop_delivers_queued_events(self) -> None:
        seen: list[str] = []

        async def handler(event: TransactionEvent) -> None:
            seen.append(event.transaction_id)

        source = QueueEventSource()
        source.subscribe(handler)
        await source.start()
        for i in range(5):
            source.publish(
                TransactionEvent(
                    user_id="bob", amount=Decimal("1"), currency="USD",
                    transaction_id=f"tx-{i}", completed_at=1.0,
                )
            )
        await source.stop()

        assert seen == [f"tx-{i}" for i in range(5)]


class TestRedeliveryBackoff:
    @pytest.mark.asyncio
    async def test_redeliveries_back_off_exponentially(self) -> None:
        attempts: list[int] = []

        async def broken(event: TransactionEvent) -> None:
            attempts.append(1)
            raise RuntimeError("provider down")

        source = QueueEventSource(max_deliveries=4, retry_delay=1.5)
        source.subscribe(broken)
        with patch(
            "fxcore.referral.events.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep:
            await source.start()
            source.publish(EVENT)
            await source.drain()
            await source.stop()

        assert len(attempts) == 4
        # 1.5 * 2**0, 1.5 * 2**1, 1.5 * 2**2; no wait after the last attempt
        assert [c.args[0] for c in mock_sleep.await_args_list] == [1.5, 3.0, 6.0]

    @pytest.mark.asyncio
    async def test_waiting_redelivery_does_not_block_other_events(self) -> None:
        seen: list[str] = []
        release = asyncio.Event()

        async def handler(event: TransactionEvent) -> None:
            seen.append(event.transaction_id)
            if event.transaction_id == "tx-1" and not release.is_set():
                raise RuntimeError("not yet")

        async def held_sleep(delay: float) -> None:
            await release.wait()

        source = QueueEventSource(max_deliveries=2, retry_delay=60)
        source.subscribe(handler)
        with patch("fxcore.referral.events.asyncio.sleep", new=held_sleep):
            await source.start()
            source.publish(EVENT)
            source.publish(
                TransactionEvent(
                    user_id="carol", amount=Decimal("5"), currency="USD",
                    transaction_id="tx-2", completed_at=2.0,
                )
            )
            await source._queue.join()
            assert seen == ["tx-1", "tx-2"]
            assert source.pending == 1

            release.set()
            await source.drain()
            await source.stop()

        assert seen == ["tx-1", "tx-2", "tx-1"]
