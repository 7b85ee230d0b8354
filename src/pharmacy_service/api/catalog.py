"""FastAPI routes for categories and products"""
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from pydantic import ValidationError
from sqlalchemy.orm import Session
from typing import Optional
import logging

from pharmacy_service.api.deps import (
    get_current_user,
    get_object_storage,
    raise_for_result,
)
from pharmacy_service.db.database import get_db
from pharmacy_service.models.schemas import (
    BulkImageResponse,
    BulkUploadResponse,
    CategoryInput,
    CategoryListResponse,
    CategoryResponse,
    MessageResponse,
    ProductFilter,
    ProductInput,
    ProductListResponse,
    ProductResponse,
    ProductUpdate,
)
from pharmacy_service.services.auth import AuthContext
from pharmacy_service.services.category_service import CategoryService, category_tree
from pharmacy_service.services.product_service import ProductService
from pharmacy_service.services.results import field_errors
from pharmacy_service.services.storage import ObjectStorage

logger = logging.getLogger(__name__)

router = APIRouter(tags=["catalog"])


# Categories

@router.get("/category", response_model=CategoryListResponse)
def list_categories(db: Session = Depends(get_db)):
    """Category tree with a preview image per category"""
    return CategoryListResponse(categories=CategoryService.list_categories(db))


@router.get("/category/{category_id}", response_model=CategoryResponse)
def get_category(category_id: str, db: Session = Depends(get_db)):
    category = CategoryService.get_category(db, category_id)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    return category_tree(category)


@router.post("/category", response_model=CategoryResponse, status_code=status.HTTP_201_CREATED)
def create_category(
    category: CategoryInput,
    ctx: Optional[AuthContext] = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    result = CategoryService.create_category(db, ctx, category)
    raise_for_result(result)
    return result.data


@router.put("/category/{category_id}", response_model=CategoryResponse)
def update_category(
    category_id: str,
    category: CategoryInput,
    ctx: Optional[AuthContext] = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    result = CategoryService.update_category(db, ctx, category_id, category)
    raise_for_result(result, not_found_status=404)
    return result.data


@router.delete("/category/{category_id}", response_model=MessageResponse)
def delete_category(
    category_id: str,
    ctx: Optional[AuthContext] = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    result = CategoryService.delete_category(db, ctx, category_id)
    raise_for_result(result, not_found_status=404)
    return MessageResponse(message=result.message)


# Products

def _require_session(ctx: Optional[AuthContext]) -> AuthContext:
    if ctx is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return ctx


def _parse(model, form: dict):
    try:
        return model.model_validate({k: v for k, v in form.items() if v is not None})
    except ValidationError as e:
        raise HTTPException(
            status_code=400,
            detail={"message": "Validation error", "errors": field_errors(e)},
        )


async def _read_image(image: Optional[UploadFile]):
    if image is None or not image.filename:
        return None, None
    return await image.read(), image.content_type


@router.get("/products", response_model=ProductListResponse)
def list_products(db: Session = Depends(get_db)):
    """List all products that have not been deleted"""
    products = ProductService.get_products(db)
    return ProductListResponse(products=[ProductResponse.model_validate(p) for p in products])


@router.post("/products/filter", response_model=ProductListResponse)
def filter_products(filters: ProductFilter, db: Session = Depends(get_db)):
    products = ProductService.filter_products(db, filters)
    return ProductListResponse(products=[ProductResponse.model_validate(p) for p in products])


@router.post("/products/bulk-upload", response_model=BulkUploadResponse)
async def bulk_upload_products(
    file: Optional[UploadFile] = File(None),
    ctx: Optional[AuthContext] = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Import products from an xlsx sheet, one product per row"""
    ctx = _require_session(ctx)
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="No file provided")

    result = ProductService.bulk_import(db, ctx, await file.read())
    raise_for_result(result)
    return result.data


@router.post("/products/bulk-image-upload", response_model=BulkImageResponse)
async def bulk_upload_images(
    zip_file: Optional[UploadFile] = File(None, alias="zipFile"),
    ctx: Optional[AuthContext] = Depends(get_current_user),
    db: Session = Depends(get_db),
    storage: ObjectStorage = Depends(get_object_storage),
):
    """Attach product images from a zip of files named <medicine code>.<ext>"""
    ctx = _require_session(ctx)
    if zip_file is None or not zip_file.filename:
        raise HTTPException(status_code=400, detail="No file provided")

    result = await ProductService.bulk_upload_images(db, ctx, await zip_file.read(), storage)
    raise_for_result(result)
    return result.data


@router.get("/products/{product_id}", response_model=ProductResponse)
def get_product(product_id: str, db: Session = Depends(get_db)):
    """Get a specific product by ID"""
    product = ProductService.get_product(db, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@router.post("/products", response_model=ProductResponse, status_code=status.HTTP_201_CREATED)
async def create_product(
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    details: Optional[str] = Form(None),
    price: Optional[str] = Form(None),
    weight: Optional[str] = Form(None),
    medicine_code: Optional[str] = Form(None, alias="medicineCode"),
    availability: Optional[str] = Form(None),
    requires_prescription: Optional[str] = Form(None, alias="requiresPrescription"),
    category_id: Optional[str] = Form(None, alias="categoryId"),
    sub_category: Optional[str] = Form(None, alias="subCategory"),
    image: Optional[UploadFile] = File(None),
    ctx: Optional[AuthContext] = Depends(get_current_user),
    db: Session = Depends(get_db),
    storage: ObjectStorage = Depends(get_object_storage),
):
    """Create a product; a deleted product with the same medicine code is restored"""
    ctx = _require_session(ctx)
    data = _parse(ProductInput, {
        "name": name,
        "description": description,
        "details": details,
        "price": price,
        "weight": weight,
        "medicineCode": medicine_code,
        "availability": availability,
        "requiresPrescription": requires_prescription,
        "categoryId": category_id or None,
        "subCategory": sub_category or None,
    })
    content, content_type = await _read_image(image)

    result = await ProductService.create_product(db, ctx, data, storage, content, content_type)
    raise_for_result(result)
    return result.data


@router.patch("/products/{product_id}", response_model=ProductResponse)
async def update_product(
    product_id: str,
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    details: Optional[str] = Form(None),
    price: Optional[str] = Form(None),
    weight: Optional[str] = Form(None),
    medicine_code: Optional[str] = Form(None, alias="medicineCode"),
    availability: Optional[str] = Form(None),
    requires_prescription: Optional[str] = Form(None, alias="requiresPrescription"),
    category_id: Optional[str] = Form(None, alias="categoryId"),
    sub_category: Optional[str] = Form(None, alias="subCategory"),
    image: Optional[UploadFile] = File(None),
    ctx: Optional[AuthContext] = Depends(get_current_user),
    db: Session = Depends(get_db),
    storage: ObjectStorage = Depends(get_object_storage),
):
    """Update an existing product"""
    ctx = _require_session(ctx)
    data = _parse(ProductUpdate, {
        "name": name,
        "description": description,
        "details": details,
        "price": price,
        "weight": weight,
        "medicineCode": medicine_code,
        "availability": availability,
        "requiresPrescription": requires_prescription,
        "categoryId": category_id,
        "subCategory": sub_category,
    })
    content, content_type = await _read_image(image)

    result = await ProductService.update_product(db, ctx, product_id, data, storage, content, content_type)
    raise_for_result(result, not_found_status=404)
    return result.data


@router.delete("/products/{product_id}", response_model=MessageResponse)
def delete_product(
    product_id: str,
    ctx: Optional[AuthContext] = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Delete a product (soft delete)"""
    ctx = _require_session(ctx)
    result = ProductService.delete_product(db, ctx, product_id)
    raise_for_result(result, not_found_status=404)
    return MessageResponse(message=result.message)
