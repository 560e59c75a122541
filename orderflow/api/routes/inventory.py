from typing import List

from fastapi import APIRouter, Depends, HTTPException

from orderflow.api.dependencies import get_catalog
from orderflow.core.errors import NotFoundError, ValidationError
from orderflow.models.schemas import Product, ProductCreate, RestockRequest
from orderflow.services.catalog import ProductCatalog

router = APIRouter()


@router.post("/", response_model=Product, status_code=201)
async def create_product(item_data: ProductCreate, catalog: ProductCatalog = Depends(get_catalog)):
    """Create a new product with its opening stock"""
    try:
        return await catalog.create_product(item_data)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/", response_model=List[Product])
async def list_products(catalog: ProductCatalog = Depends(get_catalog)):
    """List products (cached)"""
    return await catalog.list_products()


@router.get("/{product_id}", response_model=Product)
async def get_product(product_id: str, catalog: ProductCatalog = Depends(get_catalog)):
    """Get a specific product (cached)"""
    try:
        return await catalog.get_product(product_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Product not found")


@router.post("/{product_id}/restock", response_model=Product)
async def restock_product(
    product_id: str,
    request: RestockRequest,
    catalog: ProductCatalog = Depends(get_catalog),
):
    """Add stock to a product"""
    try:
        return await catalog.restock(product_id, request.quantity)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Product not found")
