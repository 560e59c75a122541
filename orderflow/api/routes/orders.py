from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from orderflow.api.dependencies import get_order_service
from orderflow.core.errors import NotFoundError, TransientError, ValidationError
from orderflow.models.outcomes import InsufficientStock
from orderflow.models.schemas import Order, OrderCreate, OrderStatusUpdate
from orderflow.services.order_service import OrderProcessingService

router = APIRouter()


def _transient_response(exc: TransientError) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"detail": str(exc), "retry_after": exc.retry_after},
        headers={"Retry-After": str(max(1, round(exc.retry_after)))},
    )


@router.post("/", response_model=Order, status_code=201)
async def create_order(
    order_data: OrderCreate,
    service: OrderProcessingService = Depends(get_order_service),
):
    """Create an order exactly once per idempotency key"""
    try:
        result = await service.create_order(
            order_data.idempotency_key, order_data.items, timeout=order_data.timeout_seconds
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except TransientError as e:
        return _transient_response(e)

    if isinstance(result, InsufficientStock):
        return JSONResponse(
            status_code=409,
            content={
                "detail": f"Insufficient stock for {result.product_id}",
                "product_id": result.product_id,
                "requested": result.requested,
                "available": result.available,
                "idempotency_key": order_data.idempotency_key,
            },
        )
    if result.replayed:
        return JSONResponse(status_code=200, content=result.order.model_dump(mode="json"))
    return result.order


@router.get("/{order_id}", response_model=Order)
async def get_order(order_id: str, service: OrderProcessingService = Depends(get_order_service)):
    """Get a specific order"""
    try:
        return await service.get_order(order_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")


@router.post("/{order_id}/status", response_model=Order)
async def update_order_status(
    order_id: str,
    update: OrderStatusUpdate,
    service: OrderProcessingService = Depends(get_order_service),
):
    """Move an order to paid, cancelled or failed"""
    try:
        return await service.transition_status(order_id, update.status)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")
    except ValidationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TransientError as e:
        return _transient_response(e)
