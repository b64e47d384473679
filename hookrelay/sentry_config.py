"""
Sentry error tracking.

Only failures that need a human go here: store outages that abort a
scheduler pass and broken delivery observers. Failed deliveries are
normal operation and stay in the activity log.
"""
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from hookrelay.config import settings
from hookrelay.logging_config import logger


def configure_sentry(component: str = "api"):
    """
    Initialize Sentry for the API process or the ARQ worker.

    No-op (with a warning) when SENTRY_DSN is not set.
    """
    if not settings.SENTRY_DSN:
        logger.warning("sentry_disabled", reason="SENTRY_DSN not set", component=component)
        return

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,
        environment=settings.ENVIRONMENT,
        release=f"{settings.APP_NAME.lower()}@{settings.APP_VERSION}",
        server_name=component,
    )
    sentry_sdk.set_tag("service", settings.APP_NAME)
    sentry_sdk.set_tag("component", component)

    logger.info("sentry_initialized", environment=settings.ENVIRONMENT, component=component)


def capture_exception(error: BaseException | None = None, **tags):
    """
    Report an exception, tagged with retry-engine context.

    Usage:
        except Exception:
            capture_exception(task_id=task.id, observer=observer.name)
    """
    if not sentry_sdk.get_client().is_active():
        return
    with sentry_sdk.new_scope() as scope:
        for key, value in tags.items():
            if value is not None:
                scope.set_tag(key, value)
        sentry_sdk.capture_exception(error)
