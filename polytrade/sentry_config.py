"""
Sentry configuration for error tracking.

Captures unhandled exceptions and notification failures with deal context.
"""
import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from polytrade.config import Settings

logger = structlog.get_logger()


def configure_sentry(config: Settings) -> bool:
    """
    Initialize Sentry with FastAPI and SQLAlchemy integrations.

    Returns False (and does nothing) when SENTRY_DSN is not set.
    """
    dsn = config.SENTRY_DSN

    if not dsn:
        logger.info("sentry_disabled", reason="SENTRY_DSN not set")
        return False

    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
        ],
        before_send=add_context,
        # Sample rate: capture 10% of transactions for performance monitoring
        traces_sample_rate=0.1,
        environment=config.ENVIRONMENT,
        release=config.APP_VERSION,
    )

    logger.info("sentry_initialized", environment=config.ENVIRONMENT)
    return True


def add_context(event, hint):
    """
    Tag error events with the deal they belong to.

    Delivery code passes deal_id through `capture_exception(..., deal_id=...)`,
    which lands in the event's extra data.
    """
    deal_id = (event.get("extra") or {}).get("deal_id")
    if deal_id:
        event.setdefault("tags", {})["deal_id"] = deal_id
    return event


def capture_exception(exc_info=None, **context):
    """
    Capture an exception to Sentry, with optional extra context.

    Usage:
        try:
            ...
        except Exception as e:
            capture_exception(e, deal_id=deal.id)
    """
    if not sentry_sdk.get_client().is_active():
        return

    with sentry_sdk.new_scope() as scope:
        for key, value in context.items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exc_info)
