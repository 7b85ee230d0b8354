"""Product business logic"""
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from typing import Dict, List, Optional, Tuple
from datetime import datetime
from opentelemetry import trace
import io
import logging
import mimetypes
import posixpath
import zipfile

from pharmacy_service.models.product import Category, Product
from pharmacy_service.models.schemas import (
    BulkImageResponse,
    BulkUploadCounts,
    BulkUploadProducts,
    BulkUploadResponse,
    ProductFilter,
    ProductInput,
    ProductResponse,
    ProductSheetRow,
    ProductUpdate,
    RowError,
    SkippedProduct,
)
from pharmacy_service.models.user import Role
from pharmacy_service.services.auth import AuthContext
from pharmacy_service.services.results import ErrorKind, OperationResult, field_errors
from pharmacy_service.services.storage import ObjectStorage, StorageError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CATALOG_EDITORS = (Role.ADMIN, Role.PHARMACY_STAFF)

# Header text before any "(...)" hint, lowercased, mapped to the row field
SHEET_COLUMNS = {
    "product name": "name",
    "description": "description",
    "details": "details",
    "price": "price",
    "weight": "weight",
    "medicine code": "medicine_code",
    "category name": "category",
    "subcategory name": "sub_category",
    "availability": "availability",
    "requires prescription": "requires_prescription",
}
NUMERIC_COLUMNS = ("price", "weight", "requires_prescription")

MAX_ARCHIVE_BYTES = 50 * 1024 * 1024
MAX_IMAGE_BYTES = 5 * 1024 * 1024
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif")


class SheetError(Exception):
    """The upload is not a readable xlsx workbook"""


def _cell_text(value) -> Optional[str]:
    if value is None:
        return None
    # Codes typed as numbers come back as floats
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def read_product_sheet(content: bytes) -> List[Tuple[int, Dict]]:
    """Rows of the first worksheet as (spreadsheet row number, fields).

    The first row holds the headers; columns that are not recognised are
    ignored and blank rows are dropped.
    """
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError) as e:
        raise SheetError(str(e)) from e

    try:
        rows = workbook.active.iter_rows(values_only=True)
        header = next(rows, None) or ()
        columns = [
            SHEET_COLUMNS.get((_cell_text(cell) or "").split("(")[0].strip().lower())
            for cell in header
        ]

        parsed = []
        for number, values in enumerate(rows, start=2):
            fields = {}
            for field, value in zip(columns, values):
                if field is None:
                    continue
                value = value if field in NUMERIC_COLUMNS else _cell_text(value)
                if isinstance(value, str):
                    value = value.strip() or None
                if value is not None:
                    fields[field] = value
            if fields:
                parsed.append((number, fields))
        return parsed
    finally:
        workbook.close()


def _describe_errors(e: ValidationError) -> str:
    return "; ".join(
        f"{field}: {', '.join(messages)}" for field, messages in field_errors(e).items()
    )


def _find_or_create_category(db: Session, name: str, parent_id: Optional[str]) -> Category:
    query = db.query(Category).filter(Category.name == name)
    if parent_id:
        query = query.filter(Category.parent_id == parent_id)
    else:
        query = query.filter(Category.parent_id.is_(None))

    category = query.first()
    if category is None:
        category = Category(name=name, parent_id=parent_id)
        db.add(category)
        db.flush()
        logger.info(f"Created category {name} during bulk import")
    return category


def _is_image_entry(info: zipfile.ZipInfo) -> bool:
    filename = posixpath.basename(info.filename)
    if info.is_dir() or not filename or filename.startswith("."):
        return False
    if info.filename.startswith("__MACOSX/"):
        return False
    return posixpath.splitext(filename)[1].lower() in IMAGE_EXTENSIONS


class ProductService:
    """Product service for business logic"""

    @staticmethod
    def get_product(db: Session, product_id: str) -> Optional[Product]:
        """Get a product that has not been deleted"""
        with tracer.start_as_current_span("get_product") as span:
            span.set_attribute("product.id", product_id)
            return (
                db.query(Product)
                .filter(Product.id == product_id, Product.deleted_at.is_(None))
                .first()
            )

    @staticmethod
    def get_product_by_code(db: Session, medicine_code: str) -> Optional[Product]:
        """Get product by medicine code, deleted or not"""
        return db.query(Product).filter(Product.medicine_code == medicine_code).first()

    @staticmethod
    def get_products(db: Session) -> List[Product]:
        """All active products, newest first"""
        return (
            db.query(Product)
            .filter(Product.deleted_at.is_(None))
            .order_by(Product.created_at.desc())
            .all()
        )

    @staticmethod
    def filter_products(db: Session, filters: ProductFilter) -> List[Product]:
        with tracer.start_as_current_span("filter_products") as span:
            query = db.query(Product).filter(Product.deleted_at.is_(None))

            if filters.category_id:
                query = query.filter(Product.category_id == filters.category_id)
                span.set_attribute("filter.category_id", filters.category_id)
            if filters.min_price is not None:
                query = query.filter(Product.price >= filters.min_price)
            if filters.max_price is not None:
                query = query.filter(Product.price <= filters.max_price)
            if filters.availability:
                query = query.filter(Product.availability == filters.availability)
            if filters.staff_id:
                query = query.filter(Product.pharmacy_staff_id == filters.staff_id)

            return query.order_by(Product.created_at.desc()).all()

    @staticmethod
    def _can_edit(ctx: Optional[AuthContext]) -> bool:
        return ctx is not None and ctx.has_role(CATALOG_EDITORS)

    @staticmethod
    def _resolve_category(db: Session, category_id: Optional[str], sub_category: Optional[str]):
        """The most specific category given; False when it does not exist"""
        chosen = sub_category or category_id
        if chosen and not db.query(Category.id).filter(Category.id == chosen).first():
            return False
        return chosen

    @staticmethod
    async def _upload_image(storage: ObjectStorage, image: Optional[bytes], content_type: Optional[str]):
        if not image:
            return None
        return await storage.upload("products", image, content_type)

    @staticmethod
    async def create_product(
        db: Session,
        ctx: Optional[AuthContext],
        data: ProductInput,
        storage: ObjectStorage,
        image: Optional[bytes] = None,
        image_type: Optional[str] = None,
    ) -> OperationResult:
        """Create a product, or bring back a deleted one with the same medicine code"""
        with tracer.start_as_current_span("create_product") as span:
            if not ProductService._can_edit(ctx):
                return OperationResult.fail(ErrorKind.FORBIDDEN, "Unauthorized")

            category_id = ProductService._resolve_category(db, data.category_id, data.sub_category)
            if category_id is False:
                return OperationResult.fail(ErrorKind.VALIDATION, "Category not found")

            existing = ProductService.get_product_by_code(db, data.medicine_code)
            if existing and existing.deleted_at is None:
                return OperationResult.fail(
                    ErrorKind.VALIDATION, f"Product with medicine code {data.medicine_code} already exists"
                )

            try:
                image_url = await ProductService._upload_image(storage, image, image_type)
            except StorageError as e:
                logger.error(f"Product image upload failed: {e}")
                return OperationResult.fail(ErrorKind.UPSTREAM, "Failed to upload image")

            fields = data.model_dump(exclude={"sub_category", "category_id", "image_url"})
            fields.update(
                category_id=category_id,
                image_url=image_url or data.image_url,
                pharmacy_staff_id=ctx.user_id,
            )

            if existing:
                for field, value in fields.items():
                    setattr(existing, field, value)
                existing.deleted_at = None
                product = existing
                logger.info(f"Reactivated product {product.id} ({data.medicine_code})")
            else:
                product = Product(**fields)
                db.add(product)

            db.commit()
            db.refresh(product)
            span.set_attribute("product.id", product.id)
            return OperationResult.ok(product)

    @staticmethod
    async def update_product(
        db: Session,
        ctx: Optional[AuthContext],
        product_id: str,
        data: ProductUpdate,
        storage: ObjectStorage,
        image: Optional[bytes] = None,
        image_type: Optional[str] = None,
    ) -> OperationResult:
        """Update existing product"""
        if not ProductService._can_edit(ctx):
            return OperationResult.fail(ErrorKind.FORBIDDEN, "Unauthorized")

        product = ProductService.get_product(db, product_id)
        if not product:
            return OperationResult.fail(ErrorKind.NOT_FOUND, "Product not found")

        update_data = data.model_dump(exclude_unset=True)
        sub_category = update_data.pop("sub_category", None)
        if "category_id" in update_data or sub_category:
            category_id = ProductService._resolve_category(db, update_data.get("category_id"), sub_category)
            if category_id is False:
                return OperationResult.fail(ErrorKind.VALIDATION, "Category not found")
            update_data["category_id"] = category_id

        code = update_data.get("medicine_code")
        if code and code != product.medicine_code:
            clash = ProductService.get_product_by_code(db, code)
            if clash and clash.id != product.id:
                return OperationResult.fail(
                    ErrorKind.VALIDATION, f"Product with medicine code {code} already exists"
                )

        try:
            image_url = await ProductService._upload_image(storage, image, image_type)
        except StorageError as e:
            logger.error(f"Product image upload failed: {e}")
            return OperationResult.fail(ErrorKind.UPSTREAM, "Failed to upload image")
        if image_url:
            update_data["image_url"] = image_url

        for field, value in update_data.items():
            setattr(product, field, value)

        db.commit()
        db.refresh(product)
        logger.info(f"Product {product.id} updated by {ctx.user_id}")
        return OperationResult.ok(product)

    @staticmethod
    def delete_product(db: Session, ctx: Optional[AuthContext], product_id: str) -> OperationResult:
        """Delete product (soft delete)"""
        if not ProductService._can_edit(ctx):
            return OperationResult.fail(ErrorKind.FORBIDDEN, "Unauthorized")

        product = ProductService.get_product(db, product_id)
        if not product:
            return OperationResult.fail(ErrorKind.NOT_FOUND, "Product not found")

        product.deleted_at = datetime.utcnow()
        db.commit()
        logger.info(f"Product {product_id} deleted by {ctx.user_id}")
        return OperationResult.ok(message="Product deleted successfully")

    @staticmethod
    def bulk_import(db: Session, ctx: Optional[AuthContext], content: bytes) -> OperationResult:
        """Create or reactivate products from an xlsx sheet.

        Each row is committed on its own, so one bad row never undoes the
        others. Categories and subcategories are matched by name and created
        when missing; the product is filed under the subcategory. A row whose
        medicine code belongs to an active product is skipped, and one that
        matches a deleted product brings it back with the sheet's values.
        """
        with tracer.start_as_current_span("bulk_import_products") as span:
            if not ProductService._can_edit(ctx):
                return OperationResult.fail(ErrorKind.FORBIDDEN, "Unauthorized")

            try:
                rows = read_product_sheet(content)
            except SheetError as e:
                logger.warning(f"Rejected product sheet: {e}")
                return OperationResult.fail(ErrorKind.VALIDATION, "Invalid spreadsheet file")
            if not rows:
                return OperationResult.fail(ErrorKind.VALIDATION, "The spreadsheet has no product rows")
            span.set_attribute("import.rows", len(rows))

            created, reactivated = [], []
            skipped: List[SkippedProduct] = []
            errors: List[RowError] = []

            for number, fields in rows:
                try:
                    row = ProductSheetRow.model_validate(fields)
                except ValidationError as e:
                    errors.append(RowError(row=number, product_name=fields.get("name"), error=_describe_errors(e)))
                    continue

                existing = ProductService.get_product_by_code(db, row.medicine_code)
                if existing and existing.deleted_at is None:
                    skipped.append(SkippedProduct(
                        row=number,
                        name=row.name,
                        medicine_code=row.medicine_code,
                        reason="A product with the same Product Id already exists",
                    ))
                    continue

                try:
                    category = _find_or_create_category(db, row.category, None)
                    sub_category = _find_or_create_category(db, row.sub_category, category.id)

                    values = row.model_dump(exclude={"category", "sub_category"})
                    values.update(category_id=sub_category.id, pharmacy_staff_id=ctx.user_id)
                    if existing:
                        for field, value in values.items():
                            setattr(existing, field, value)
                        existing.deleted_at = None
                        product = existing
                    else:
                        product = Product(**values)
                        db.add(product)

                    db.commit()
                    db.refresh(product)
                except SQLAlchemyError as e:
                    db.rollback()
                    logger.error(f"Bulk import row {number} failed: {e}")
                    errors.append(RowError(row=number, product_name=row.name, error="Failed to save product"))
                    continue

                (reactivated if existing else created).append(ProductResponse.model_validate(product))

            processed = len(created) + len(reactivated)
            logger.info(
                f"Bulk import by {ctx.user_id}: {len(created)} created, {len(reactivated)} reactivated, "
                f"{len(skipped)} skipped, {len(errors)} failed"
            )
            return OperationResult.ok(BulkUploadResponse(
                message=f"Successfully processed {processed} products",
                details=BulkUploadCounts(
                    created=len(created),
                    reactivated=len(reactivated),
                    skipped=len(skipped),
                    errors=len(errors),
                ),
                products=BulkUploadProducts(created=created, reactivated=reactivated),
                skipped_products=skipped,
                errors=errors,
            ))

    @staticmethod
    async def bulk_upload_images(
        db: Session,
        ctx: Optional[AuthContext],
        archive: bytes,
        storage: ObjectStorage,
    ) -> OperationResult:
        """Attach images from a zip; each file is named after a medicine code"""
        if not ProductService._can_edit(ctx):
            return OperationResult.fail(ErrorKind.FORBIDDEN, "Unauthorized")
        if len(archive) > MAX_ARCHIVE_BYTES:
            return OperationResult.fail(ErrorKind.VALIDATION, "Zip file must be smaller than 50MB")

        try:
            bundle = zipfile.ZipFile(io.BytesIO(archive))
        except zipfile.BadZipFile:
            return OperationResult.fail(ErrorKind.VALIDATION, "Invalid zip file")

        updated = 0
        errors: List[str] = []
        with bundle:
            entries = [info for info in bundle.infolist() if _is_image_entry(info)]
            for info in entries:
                filename = posixpath.basename(info.filename)
                code = posixpath.splitext(filename)[0]

                if info.file_size > MAX_IMAGE_BYTES:
                    errors.append(f"{filename}: image must be smaller than 5MB")
                    continue

                product = (
                    db.query(Product)
                    .filter(Product.medicine_code == code, Product.deleted_at.is_(None))
                    .first()
                )
                if not product:
                    errors.append(f"{filename}: no product with medicine code {code}")
                    continue

                try:
                    image_url = await storage.upload(
                        "products", bundle.read(info), mimetypes.guess_type(filename)[0]
                    )
                except (StorageError, zipfile.BadZipFile) as e:
                    logger.error(f"Bulk image {filename} failed: {e}")
                    errors.append(f"{filename}: failed to upload image")
                    continue

                product.image_url = image_url
                db.commit()
                updated += 1

        logger.info(f"Bulk image upload by {ctx.user_id}: {updated} of {len(entries)} images attached")
        return OperationResult.ok(BulkImageResponse(
            message=f"Updated images for {updated} products",
            updated=updated,
            failed=len(errors),
            total_files=len(entries),
            errors=errors,
        ))
