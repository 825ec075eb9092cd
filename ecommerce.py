from __future__ import annotations

import logging
import secrets
import string
from collections import Counter
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from blog import TaxonomyService
from errors import NotFoundError, OutOfStockError
from models import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Product,
    ProductCategory,
    ProductStatus,
    ProductTag,
)
from schemas import OrderIn, ProductIn
from slugs import unique_slug


logger = logging.getLogger(__name__)

_ALPHABET = string.ascii_uppercase + string.digits


def _random_code(prefix: str, length: int) -> str:
    return prefix + "".join(secrets.choice(_ALPHABET) for _ in range(length))


def product_categories(session: Session) -> TaxonomyService:
    return TaxonomyService(session, ProductCategory, "Product category")


def product_tags(session: Session) -> TaxonomyService:
    return TaxonomyService(session, ProductTag, "Product tag")


class ProductService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, product_id: int) -> Product:
        product = self.session.get(Product, product_id)
        if product is None or product.is_deleted:
            raise NotFoundError("Product not found")
        return product

    def list(
        self,
        *,
        status: Optional[ProductStatus] = None,
        category_id: Optional[int] = None,
        query: Optional[str] = None,
        low_stock: bool = False,
        limit: int = 15,
        offset: int = 0,
    ) -> tuple[list[Product], int]:
        stmt = select(Product).where(Product.deleted_at.is_(None))
        if status is not None:
            stmt = stmt.where(Product.status == status)
        if category_id is not None:
            stmt = stmt.where(Product.category_id == category_id)
        if query:
            pattern = f"%{query.strip()}%"
            stmt = stmt.where(or_(Product.name.ilike(pattern), Product.sku.ilike(pattern)))
        if low_stock:
            stmt = stmt.where(
                Product.track_inventory.is_(True),
                Product.stock_quantity <= Product.low_stock_threshold,
            )
        total = self.session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        stmt = stmt.order_by(Product.created_at.desc(), Product.id.desc()).limit(limit).offset(offset)
        return list(self.session.scalars(stmt)), int(total)

    def _unique_sku(self, sku: Optional[str], exclude_id: Optional[int] = None) -> str:
        if not sku:
            while True:
                sku = _random_code("PRD-", 8)
                if self.session.execute(select(Product.id).where(Product.sku == sku)).first() is None:
                    return sku
        stmt = select(Product.id).where(Product.sku == sku)
        if exclude_id is not None:
            stmt = stmt.where(Product.id != exclude_id)
        if self.session.execute(stmt).first():
            raise ValueError("SKU is already in use")
        return sku

    def _apply(self, product: Product, data: ProductIn) -> None:
        if data.sale_price is not None and data.sale_price > data.price:
            raise ValueError("Sale price cannot exceed the regular price")
        if data.category_id is not None:
            product_categories(self.session).get(data.category_id)
        tags: list[ProductTag] = []
        if data.tag_ids:
            tags = list(
                self.session.scalars(select(ProductTag).where(ProductTag.id.in_(data.tag_ids)))
            )
            if len(tags) != len(set(data.tag_ids)):
                raise NotFoundError("Product tag not found")
        for field in (
            "description",
            "price",
            "sale_price",
            "cost",
            "stock_quantity",
            "low_stock_threshold",
            "track_inventory",
            "status",
            "is_featured",
            "category_id",
        ):
            setattr(product, field, getattr(data, field))
        product.name = data.name.strip()
        product.tags = tags

    def create(self, data: ProductIn) -> Product:
        product = Product(
            user_id=self.user_id,
            slug=unique_slug(self.session, Product, data.slug or data.name),
            sku=self._unique_sku(data.sku),
        )
        self._apply(product, data)
        self.session.add(product)
        self.session.commit()
        return product

    def update(self, product_id: int, data: ProductIn) -> Product:
        product = self.get(product_id)
        if data.slug and data.slug != product.slug:
            product.slug = unique_slug(self.session, Product, data.slug, exclude_id=product.id)
        if data.sku and data.sku != product.sku:
            product.sku = self._unique_sku(data.sku, exclude_id=product.id)
        self._apply(product, data)
        self.session.commit()
        return product

    def soft_delete(self, product_id: int) -> None:
        product = self.get(product_id)
        product.deleted_at = datetime.utcnow()
        self.session.commit()

    def adjust_stock(self, product_id: int, delta: int) -> Product:
        product = self.get(product_id)
        if product.stock_quantity + delta < 0:
            raise OutOfStockError(f"Insufficient stock for product: {product.name}")
        product.stock_quantity += delta
        self.session.commit()
        return product


class OrderService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, order_id: int) -> Order:
        order = self.session.get(Order, order_id)
        if order is None or order.is_deleted:
            raise NotFoundError("Order not found")
        return order

    def list(
        self,
        *,
        status: Optional[OrderStatus] = None,
        payment_status: Optional[PaymentStatus] = None,
        query: Optional[str] = None,
        limit: int = 15,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        stmt = select(Order).where(Order.deleted_at.is_(None))
        if status is not None:
            stmt = stmt.where(Order.status == status)
        if payment_status is not None:
            stmt = stmt.where(Order.payment_status == payment_status)
        if query:
            stmt = stmt.where(Order.order_number.ilike(f"%{query.strip()}%"))
        total = self.session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        stmt = stmt.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).offset(offset)
        return list(self.session.scalars(stmt)), int(total)

    def _order_number(self) -> str:
        while True:
            number = _random_code("ORD-", 10)
            if self.session.execute(select(Order.id).where(Order.order_number == number)).first() is None:
                return number

    def place_order(self, data: OrderIn) -> Order:
        quantities = Counter()
        for item in data.items:
            quantities[item.product_id] += item.quantity

        products: dict[int, Product] = {}
        for product_id, quantity in quantities.items():
            product = self.session.get(Product, product_id)
            if product is None or product.is_deleted:
                raise NotFoundError("Product not found")
            if product.status != ProductStatus.active:
                raise ValueError(f"Product is not available: {product.name}")
            if product.track_inventory and product.stock_quantity < quantity:
                raise OutOfStockError(f"Insufficient stock for product: {product.name}")
            products[product_id] = product

        order = Order(
            user_id=self.user_id,
            order_number=self._order_number(),
            tax=data.tax,
            shipping=data.shipping,
            discount=data.discount,
            currency=data.currency.upper(),
            payment_method=data.payment_method,
            customer_notes=data.customer_notes,
            billing_address=data.billing_address,
            shipping_address=data.shipping_address,
        )
        subtotal = Decimal("0")
        for item in data.items:
            product = products[item.product_id]
            price = Decimal(product.effective_price)
            line_total = price * item.quantity
            subtotal += line_total
            order.items.append(
                OrderItem(
                    product_id=product.id,
                    product_name=product.name,
                    quantity=item.quantity,
                    unit_price=price,
                    total=line_total,
                )
            )

        total = subtotal + data.tax + data.shipping - data.discount
        if total < 0:
            raise ValueError("Discount exceeds the order amount")
        for product_id, quantity in quantities.items():
            product = products[product_id]
            if product.track_inventory:
                product.stock_quantity -= quantity
            product.sales_count += quantity
        order.subtotal = subtotal
        order.total = total
        self.session.add(order)
        self.session.commit()
        logger.info(f"order_placed: order_number={order.order_number} total={order.total}")
        return order

    def mark_paid(self, order_id: int) -> Order:
        order = self.get(order_id)
        if order.payment_status == PaymentStatus.paid:
            raise ValueError("Order is already paid")
        if order.status in (OrderStatus.cancelled, OrderStatus.refunded):
            raise ValueError(f"Cannot pay a {order.status.value} order")
        order.payment_status = PaymentStatus.paid
        order.paid_at = datetime.utcnow()
        self.session.commit()
        return order

    def mark_processing(self, order_id: int) -> Order:
        return self._transition(order_id, OrderStatus.processing, {OrderStatus.pending})

    def complete(self, order_id: int) -> Order:
        return self._transition(
            order_id, OrderStatus.completed, {OrderStatus.pending, OrderStatus.processing}
        )

    def _transition(self, order_id: int, status: OrderStatus, allowed: set) -> Order:
        order = self.get(order_id)
        if order.status not in allowed:
            raise ValueError(f"Cannot move a {order.status.value} order to {status.value}")
        order.status = status
        self.session.commit()
        return order

    def _restock(self, order: Order) -> None:
        for item in order.items:
            product = item.product
            if product is not None and product.track_inventory:
                product.stock_quantity += item.quantity

    def cancel(self, order_id: int) -> Order:
        order = self.get(order_id)
        if order.status in (OrderStatus.cancelled, OrderStatus.refunded, OrderStatus.completed):
            raise ValueError(f"Cannot cancel a {order.status.value} order")
        order.status = OrderStatus.cancelled
        self._restock(order)
        self.session.commit()
        return order

    def refund(self, order_id: int) -> Order:
        order = self.get(order_id)
        if order.payment_status != PaymentStatus.paid:
            raise ValueError("Only paid orders can be refunded")
        order.status = OrderStatus.refunded
        order.payment_status = PaymentStatus.refunded
        self._restock(order)
        self.session.commit()
        return order

    def soft_delete(self, order_id: int) -> None:
        order = self.get(order_id)
        order.deleted_at = datetime.utcnow()
        self.session.commit()
