"""
Process startup: settings -> logging, engine, gateway.

    settings = get_active_config()
    gateway, dispatcher = build_gateway(settings, notifier=SmtpNotifier(...))
    dispatcher.start()

The transport layer calls this once and keeps the returned objects for the
life of the process.
"""

from __future__ import annotations

from caisse_config.schema import CaisseSettings
from caisse_kernel.db.engine import create_tables, init_engine_from_url
from caisse_kernel.domain.clock import Clock
from caisse_kernel.logging_config import configure_logging, get_logger
from caisse_services.gateway import DeclarationGateway, wire_side_effects
from caisse_services.handlers import DocumentRenderer, Notifier
from caisse_services.side_effects import SideEffectDispatcher

logger = get_logger("services.bootstrap")


def init_database(settings: CaisseSettings, create_schema: bool = False) -> None:
    db = settings.database
    init_engine_from_url(
        db.url,
        echo=db.echo,
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        pool_timeout=db.pool_timeout,
        busy_timeout=db.busy_timeout,
    )
    if create_schema:
        create_tables()


def build_gateway(
    settings: CaisseSettings,
    notifier: Notifier | None = None,
    renderer: DocumentRenderer | None = None,
    clock: Clock | None = None,
    create_schema: bool = False,
) -> tuple[DeclarationGateway, SideEffectDispatcher | None]:
    """
    Configure logging and the engine, then build the gateway.

    Without a notifier no dispatcher is wired and creation events are only
    logged.  The dispatcher is returned unstarted.
    """
    configure_logging(level=settings.logging.level)
    init_database(settings, create_schema=create_schema)

    gateway = DeclarationGateway(settings, clock=clock)
    dispatcher = None
    if notifier is not None:
        dispatcher = wire_side_effects(gateway, settings, notifier, renderer)

    logger.info(
        "gateway_ready",
        extra={
            "side_effects": dispatcher is not None,
            "archival": renderer is not None,
            "production": settings.production,
        },
    )
    return gateway, dispatcher
