"""Category business logic"""
from sqlalchemy.orm import Session
from typing import List, Optional
from opentelemetry import trace
import logging

from pharmacy_service.models.product import Category, Product
from pharmacy_service.models.schemas import CategoryInput, CategoryResponse
from pharmacy_service.models.user import Role
from pharmacy_service.services.auth import AuthContext
from pharmacy_service.services.results import ErrorKind, OperationResult

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CATALOG_EDITORS = (Role.ADMIN, Role.PHARMACY_STAFF)

# Top level plus children and grandchildren
TREE_DEPTH = 3


def _first_image(category: Category) -> Optional[str]:
    for product in category.products:
        if product.deleted_at is None and product.image_url:
            return product.image_url
    return None


def category_tree(category: Category, depth: int = TREE_DEPTH) -> CategoryResponse:
    children = []
    if depth > 1:
        children = [category_tree(child, depth - 1) for child in category.children]
    return CategoryResponse(
        id=category.id,
        name=category.name,
        parent_id=category.parent_id,
        image_url=_first_image(category),
        children=children,
    )


class CategoryService:
    """Category service for business logic"""

    @staticmethod
    def get_category(db: Session, category_id: str) -> Optional[Category]:
        return db.query(Category).filter(Category.id == category_id).first()

    @staticmethod
    def list_categories(db: Session) -> List[CategoryResponse]:
        """Top-level categories with their subtree"""
        with tracer.start_as_current_span("list_categories"):
            roots = (
                db.query(Category)
                .filter(Category.parent_id.is_(None))
                .order_by(Category.name)
                .all()
            )
            return [category_tree(root) for root in roots]

    @staticmethod
    def create_category(db: Session, ctx: Optional[AuthContext], data: CategoryInput) -> OperationResult:
        if ctx is None or not ctx.has_role(CATALOG_EDITORS):
            return OperationResult.fail(ErrorKind.FORBIDDEN, "Unauthorized")

        if data.parent_id and not CategoryService.get_category(db, data.parent_id):
            return OperationResult.fail(ErrorKind.VALIDATION, "Parent category not found")

        category = Category(name=data.name, parent_id=data.parent_id)
        db.add(category)
        db.commit()
        db.refresh(category)

        logger.info(f"Category {category.id} ({category.name}) created")
        return OperationResult.ok(category_tree(category))

    @staticmethod
    def update_category(
        db: Session, ctx: Optional[AuthContext], category_id: str, data: CategoryInput
    ) -> OperationResult:
        if ctx is None or not ctx.has_role(CATALOG_EDITORS):
            return OperationResult.fail(ErrorKind.FORBIDDEN, "Unauthorized")

        category = CategoryService.get_category(db, category_id)
        if not category:
            return OperationResult.fail(ErrorKind.NOT_FOUND, "Category not found")

        if data.parent_id:
            if data.parent_id == category_id:
                return OperationResult.fail(ErrorKind.VALIDATION, "A category cannot be its own parent")
            if not CategoryService.get_category(db, data.parent_id):
                return OperationResult.fail(ErrorKind.VALIDATION, "Parent category not found")

        category.name = data.name
        category.parent_id = data.parent_id
        db.commit()
        db.refresh(category)
        return OperationResult.ok(category_tree(category))

    @staticmethod
    def delete_category(db: Session, ctx: Optional[AuthContext], category_id: str) -> OperationResult:
        if ctx is None or not ctx.has_role(CATALOG_EDITORS):
            return OperationResult.fail(ErrorKind.FORBIDDEN, "Unauthorized")

        category = CategoryService.get_category(db, category_id)
        if not category:
            return OperationResult.fail(ErrorKind.NOT_FOUND, "Category not found")

        active_products = (
            db.query(Product.id)
            .filter(Product.category_id == category_id, Product.deleted_at.is_(None))
            .first()
        )
        if category.children or active_products:
            return OperationResult.fail(
                ErrorKind.VALIDATION, "Category still has subcategories or products"
            )

        # Deleted products may still point at the category
        db.query(Product).filter(Product.category_id == category_id).update(
            {Product.category_id: None}, synchronize_session=False
        )
        db.delete(category)
        db.commit()
        logger.info(f"Category {category_id} deleted")
        return OperationResult.ok(message="Category deleted successfully")
