from dataclasses import asdict
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from orderflow.api.dependencies import AppServices, get_services

router = APIRouter()


@router.get("/cache/stats")
async def cache_stats(services: AppServices = Depends(get_services)):
    return services.cache.stats.snapshot()


@router.get("/metrics")
async def metric_names(services: AppServices = Depends(get_services)):
    return {"metrics": services.metrics.series_names()}


@router.get("/metrics/{name}")
async def query_metric(
    name: str,
    window: float = Query(300.0, gt=0),
    label: Optional[str] = Query(None, description="Label filter as key=value"),
    services: AppServices = Depends(get_services),
):
    labels: Dict[str, str] = {}
    if label:
        key, sep, value = label.partition("=")
        if not sep:
            raise HTTPException(status_code=400, detail="label must look like key=value")
        labels[key] = value
    agg = services.metrics.query(name, labels, window)
    return {
        "name": name,
        "labels": labels,
        "window_seconds": window,
        "count": agg.count,
        "sum": agg.total,
        "avg": agg.average,
        "min": agg.minimum,
        "max": agg.maximum,
        "p50": agg.percentile(50),
        "p95": agg.percentile(95),
        "p99": agg.percentile(99),
    }


@router.get("/alerts")
async def active_alerts(services: AppServices = Depends(get_services)):
    return [asdict(event) for event in services.alerts.active_alerts()]


@router.get("/alerts/history")
async def alert_history(services: AppServices = Depends(get_services)):
    return [asdict(event) for event in services.alerts.history()]


@router.get("/reconciliation")
async def reconciliation(services: AppServices = Depends(get_services)):
    return [asdict(entry) for entry in services.reconciliation.entries()]


@router.get("/outbox")
async def outbox_backlog(services: AppServices = Depends(get_services)):
    return {"pending": await services.orders.outbox.backlog()}
