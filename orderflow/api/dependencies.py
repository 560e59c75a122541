from dataclasses import dataclass

from fastapi import Request

from orderflow.services.alerts import AlertEngine
from orderflow.services.cache import TwoTierCache
from orderflow.services.catalog import ProductCatalog
from orderflow.services.inventory_ledger import ReconciliationLog
from orderflow.services.metrics import MetricStore
from orderflow.services.order_service import OrderProcessingService


@dataclass
class AppServices:
    """Components built once per process by the application lifespan."""
    orders: OrderProcessingService
    catalog: ProductCatalog
    cache: TwoTierCache
    metrics: MetricStore
    alerts: AlertEngine
    reconciliation: ReconciliationLog


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def get_order_service(request: Request) -> OrderProcessingService:
    return get_services(request).orders


def get_catalog(request: Request) -> ProductCatalog:
    return get_services(request).catalog
