import logging
from contextlib import asynccontextmanager
from typing import Optional

import redis.asyncio as aioredis
from fastapi import FastAPI

from orderflow.api.dependencies import AppServices
from orderflow.api.routes import inventory, monitoring, orders
from orderflow.core.config import Settings, get_settings
from orderflow.core.database import build_engine, build_session_factory, init_models
from orderflow.core.logging import configure_logging
from orderflow.services.alerts import AlertEngine, default_rules
from orderflow.services.cache import TwoTierCache
from orderflow.services.cache_backends import MemorySharedCache, RedisSharedCache
from orderflow.services.catalog import ProductCatalog
from orderflow.services.events import InMemoryEventPublisher, RedisEventPublisher
from orderflow.services.inventory_ledger import InventoryLedger, ReconciliationLog, SqlStockStore
from orderflow.services.metrics import MetricStore
from orderflow.services.notifications import LoggingNotifier, WebhookNotifier
from orderflow.services.order_service import OrderProcessingService
from orderflow.services.scheduler import PeriodicTask

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level, settings.log_json)
        engine = build_engine(settings.database_url)
        if settings.create_tables:
            await init_models(engine)
        session_factory = build_session_factory(engine)

        redis_client = None
        if settings.redis_url:
            redis_client = aioredis.from_url(settings.redis_url)
            shared = RedisSharedCache(redis_client)
            publisher = RedisEventPublisher(redis_client, stream=settings.event_stream)
        else:
            logger.warning("No redis_url configured: shared cache and event bus are in-process only")
            shared = MemorySharedCache()
            publisher = InMemoryEventPublisher()

        metrics = MetricStore(retention_seconds=settings.metric_retention_hours * 3600)
        cache = TwoTierCache(
            shared,
            metrics=metrics,
            default_ttl=settings.cache_default_ttl_seconds,
            local_ttl_ceiling=settings.cache_local_ttl_ceiling_seconds,
            local_max_entries=settings.cache_local_max_entries,
        )
        ledger = InventoryLedger(SqlStockStore(session_factory))
        reconciliation = ReconciliationLog(metrics)
        order_service = OrderProcessingService(
            session_factory,
            ledger,
            publisher,
            cache=cache,
            metrics=metrics,
            reconciliation=reconciliation,
            retry_max=settings.order_retry_max,
            retry_backoff=settings.order_retry_backoff_seconds,
            default_timeout=settings.order_timeout_seconds,
        )
        catalog = ProductCatalog(session_factory, ledger, cache, ttl=settings.cache_default_ttl_seconds)

        notifier = (
            WebhookNotifier(settings.alert_webhook_url)
            if settings.alert_webhook_url
            else LoggingNotifier()
        )
        alerts = AlertEngine(metrics, notifier, default_rules())
        alert_task = PeriodicTask("alert-evaluation", settings.alert_tick_interval_seconds, alerts.evaluate)
        sweep_task = PeriodicTask("metric-retention", settings.metric_sweep_interval_seconds, metrics.sweep_async)
        relay_task = PeriodicTask(
            "outbox-relay", settings.outbox_relay_interval_seconds, order_service.outbox.relay_pending
        )
        alert_task.start()
        sweep_task.start()
        relay_task.start()

        app.state.services = AppServices(
            orders=order_service,
            catalog=catalog,
            cache=cache,
            metrics=metrics,
            alerts=alerts,
            reconciliation=reconciliation,
        )
        logger.info("Orderflow backend started")

        yield

        await alert_task.stop()
        await sweep_task.stop()
        await relay_task.stop()
        if isinstance(notifier, WebhookNotifier):
            await notifier.aclose()
        if redis_client is not None:
            await redis_client.aclose()
        await engine.dispose()
        logger.info("Orderflow backend stopped")

    app = FastAPI(
        title="Orderflow Backend",
        description="Orders, inventory, caching and alerting for the e-commerce backend",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Include routers
    app.include_router(orders.router, prefix="/api/v1/orders", tags=["orders"])
    app.include_router(inventory.router, prefix="/api/v1/inventory", tags=["inventory"])
    app.include_router(monitoring.router, prefix="/api/v1/monitoring", tags=["monitoring"])

    @app.get("/")
    async def root():
        return {"message": "Orderflow Backend API"}

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
