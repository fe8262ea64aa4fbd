"""Entry point for the monetary event-processing core.

Wires all components together, optionally embeds the FastAPI ops API,
and starts the rate alert monitor and the referral reward consumer.
Every client (rate provider, push and email transports, wallet, database)
is built once here and passed by reference; no component reaches for a
global.

Handles SIGINT/SIGTERM for graceful shutdown: no new ticks are scheduled,
an in-flight tick finishes, queued transaction events are drained.

Component wiring order (in _build_components):
1. Database + stores
2. RateProvider (OpenExchangeRates)
3. PushTransport (FCM or logging) + EmailTransport (Mailgun, optional)
   + NotificationDispatcher
4. RateAlertMonitor
5. FeeCalculator
6. QueueEventSource + RewardCreditor + ReferralRewardEngine
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from fxcore.alerts.monitor import RateAlertMonitor
from fxcore.config import AppSettings
from fxcore.data.database import Database
from fxcore.data.referral_store import ReferralStore
from fxcore.data.rule_store import AlertRuleStore
from fxcore.fees.calculator import FeeCalculator
from fxcore.logging import get_logger, setup_logging
from fxcore.notifications.dispatcher import NotificationDispatcher
from fxcore.notifications.email import EmailTransport, MailgunEmailTransport
from fxcore.notifications.transport import (
    FcmPushTransport,
    LoggingPushTransport,
    PushTransport,
)
from fxcore.rates.openexchange import OpenExchangeRatesProvider
from fxcore.referral.creditor import HttpWalletCreditor, RewardCreditor
from fxcore.referral.engine import ReferralRewardEngine
from fxcore.referral.events import QueueEventSource


def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build the full dependency graph from settings.

    Note: Does NOT open the database or start any loop -- that happens in
    _start_components().
    """
    logger = get_logger("fxcore.main")

    database = Database(settings.database.path)
    rule_store = AlertRuleStore(database)
    referral_store = ReferralStore(database)

    provider = OpenExchangeRatesProvider(settings.provider)

    transport: PushTransport
    if settings.push.backend == "fcm":
        transport = FcmPushTransport(settings.push)
    else:
        logger.warning("push_backend_logging_only", note="Notifications are logged, not sent.")
        transport = LoggingPushTransport()
    email_transport: EmailTransport | None = None
    if settings.mail.domain:
        email_transport = MailgunEmailTransport(settings.mail)
    else:
        logger.warning("email_not_configured", note="Alerts are delivered by push only.")
    dispatcher = NotificationDispatcher(
        transport,
        send_timeout=settings.monitor.send_timeout_seconds,
        email_transport=email_transport,
    )

    monitor = RateAlertMonitor(rule_store, provider, dispatcher, settings.monitor)

    fee_calculator = FeeCalculator(settings.fees)

    event_source = QueueEventSource(
        max_deliveries=settings.referral.max_deliveries,
        retry_delay=settings.referral.redelivery_delay_seconds,
    )
    creditor: RewardCreditor | None = None
    if settings.wallet.base_url:
        creditor = HttpWalletCreditor(settings.wallet)
    else:
        logger.warning("wallet_not_configured", note="Referral rewards will stay pending.")
    reward_engine = ReferralRewardEngine(
        referral_store,
        provider,
        settings.referral,
        creditor=creditor,
        rate_timeout=settings.monitor.fetch_timeout_seconds,
    )
    reward_engine.attach(event_source)

    return {
        "database": database,
        "rule_store": rule_store,
        "referral_store": referral_store,
        "provider": provider,
        "transport": transport,
        "email_transport": email_transport,
        "dispatcher": dispatcher,
        "rule_monitor": monitor,
        "fee_calculator": fee_calculator,
        "event_source": event_source,
        "creditor": creditor,
        "reward_engine": reward_engine,
    }


async def _start_components(components: dict[str, Any]) -> None:
    """Open storage and start background work.

    Raises FatalConfigError if the rate provider has no credentials; the
    monitor never ticks in that case.
    """
    await components["database"].connect()
    await components["rule_monitor"].start()
    await components["event_source"].start()
    await components["reward_engine"].start_retry_loop()


async def _stop_components(components: dict[str, Any]) -> None:
    """Stop loops (letting in-flight work finish), then release resources."""
    logger = get_logger("fxcore.main")
    await components["rule_monitor"].stop()
    await components["event_source"].stop()
    await components["reward_engine"].stop()
    await components["provider"].close()
    await components["transport"].close()
    if components["email_transport"] is not None:
        await components["email_transport"].close()
    if components["creditor"] is not None:
        await components["creditor"].close()
    await components["database"].close()
    logger.info("fxcore_stopped")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage component lifecycle within the FastAPI application."""
    logger = get_logger("fxcore.main")
    components = app.state.components

    app.state.rule_monitor = components["rule_monitor"]
    app.state.fee_calculator = components["fee_calculator"]
    app.state.event_source = components["event_source"]

    try:
        await _start_components(components)
    except Exception:
        await _stop_components(components)
        raise

    logger.info("lifespan_started")

    yield

    await _stop_components(components)


def _install_signal_handlers(shutdown: asyncio.Event) -> None:
    """SIGINT/SIGTERM request a graceful stop. Must run inside the event loop."""
    logger = get_logger("fxcore.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        shutdown.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


async def run() -> None:
    """Run the service.

    With the ops API enabled (API_ENABLED=true, the default) uvicorn owns
    the event loop and signal handling; the lifespan starts and stops the
    components. Otherwise the components run headless until a signal.
    """
    settings = AppSettings()
    setup_logging(settings.log_level)
    logger = get_logger("fxcore.main")

    components = _build_components(settings)

    if settings.api.enabled:
        from fxcore.api.app import create_app

        app = create_app(lifespan=lifespan)
        app.state.settings = settings
        app.state.components = components

        logger.info("starting_with_api", host=settings.api.host, port=settings.api.port)

        config = uvicorn.Config(
            app,
            host=settings.api.host,
            port=settings.api.port,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        await server.serve()
        return

    shutdown = asyncio.Event()
    _install_signal_handlers(shutdown)
    logger.info("starting_headless", interval_seconds=settings.monitor.interval_seconds)
    try:
        await _start_components(components)
        await shutdown.wait()
    finally:
        await _stop_components(components)


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
