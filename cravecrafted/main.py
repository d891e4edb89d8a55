from contextlib import asynccontextmanager
from fastapi import FastAPI
from cravecrafted.api import cur_version, version_prefix
from cravecrafted.api.routers import admin_routers, public_routers
from cravecrafted.background_workers.billing_poll import BillingPoller
from cravecrafted.common.custom_exceptions import register_all_exceptions
from cravecrafted.common.logging_setup import setup_logging, stop_logging
from cravecrafted.config.admin_config import admin_config
from cravecrafted.config.settings import config_settings
from cravecrafted.db.connection import async_engine, async_session
from cravecrafted.middlewares.auth_middleware import AuthenticationMiddleware
from cravecrafted.middlewares.request_id_middleware import RequestIdMiddleware
from cravecrafted.notifications.email import EmailNotifier
from cravecrafted.orders.gateway import get_gateway
from cravecrafted.orders.webhooks import gateway_webhook
from metrics.custom_instrumentator import instrumentator

webhook_path = config_settings.WEBHOOK_PATH


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    setup_logging()
    notifier = EmailNotifier()
    notifier.start()
    app.state.notifier = notifier

    poller = None
    if config_settings.BILLING_POLL_ENABLED:
        poller = BillingPoller(async_session, get_gateway(), notifier,
                               interval=config_settings.BILLING_POLL_INTERVAL_SECONDS)
        poller.start()

    try:
        yield
    finally:
        # new requests are no longer accepted at this point
        if poller is not None:
            await poller.shutdown()
        await notifier.shutdown(drain_first=True, drain_timeout=10.0)
        # safe to dispose DB engine after workers exit
        await async_engine.dispose()
        stop_logging()


def create_app():
    app = FastAPI(
        title="CraveCrafted",
        version=cur_version,
        lifespan=app_lifespan)

    app.include_router(public_routers)

    # raw body is read inside the handler, signature verification needs the exact bytes
    app.add_api_route(webhook_path, gateway_webhook, methods=["POST"], name="gateway_webhook")

    if admin_config.ENABLE_ADMIN:
        app.include_router(admin_routers)      # mounts /api/v1/admin

    app.add_middleware(AuthenticationMiddleware, session_maker=async_session,
                       paths=[f"{version_prefix}/health", f"{version_prefix}/webhooks", webhook_path,
                              "/docs", "/openapi.json", "/metrics"])
    app.add_middleware(RequestIdMiddleware)
    register_all_exceptions(app)

    if config_settings.METRICS_ENABLED:
        instrumentator.instrument(app).expose(app, endpoint="/metrics")

    return app

app = create_app()
