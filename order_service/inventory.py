import logging
import uuid

from sqlalchemy import func, select

from order_service.errors import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from order_service.models import Order, OrderContent, Product, User, utcnow

logger = logging.getLogger(__name__)

# upper bound of db.Integer columns
MAX_INT = 2**31 - 1


class OrderView:
    def __init__(self, id, user_id, created_at, completed, cost):
        self.id = id
        self.user_id = user_id
        self.created_at = created_at
        self.completed = completed
        self.cost = cost

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
            "completed": self.completed,
            "cost": self.cost,
        }

    def __repr__(self):
        return f"<OrderView {self.id} | cost {self.cost}>"


def require_non_negative_int(name, value):
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= MAX_INT:
        raise ValidationError(f"{name} must be an integer between 0 and {MAX_INT}")
    return value


def require_positive_int(name, value):
    if isinstance(value, bool) or not isinstance(value, int) or not 0 < value <= MAX_INT:
        raise ValidationError(f"{name} must be an integer between 1 and {MAX_INT}")
    return value


def _cost_subquery():
    return (
        select(
            OrderContent.order_id.label("order_id"),
            func.sum(OrderContent.price * OrderContent.quantity).label("cost"),
        )
        .group_by(OrderContent.order_id)
        .subquery()
    )


def _to_view(order, cost):
    return OrderView(
        id=order.id,
        user_id=order.user_id,
        created_at=order.created_at,
        completed=order.completed,
        cost=int(cost or 0),
    )


class InventoryEngine:
    def __init__(self, gateway):
        self.gateway = gateway

    # ==================== ORDERS ====================

    def create_order(self, user_id):
        if not user_id:
            raise ValidationError("user_id is required")

        with self.gateway.transaction() as session:
            if session.get(User, user_id) is None:
                raise NotFoundError(f"user {user_id} not found")
            order = Order(id=str(uuid.uuid4()), user_id=user_id, created_at=utcnow(), completed=False)
            session.add(order)
            session.flush()
            view = _to_view(order, 0)

        logger.info(f"Order created: {view.id} for user {user_id}")
        return view

    def get_order(self, order_id):
        cost = _cost_subquery()
        q = (
            select(Order, func.coalesce(cost.c.cost, 0))
            .outerjoin(cost, cost.c.order_id == Order.id)
            .where(Order.id == order_id)
        )
        with self.gateway.transaction() as session:
            row = session.execute(q).first()
            if row is None:
                raise NotFoundError(f"order {order_id} not found")
            return _to_view(*row)

    def list_orders(self, user_id, limit, offset):
        require_non_negative_int("limit", limit)
        require_non_negative_int("offset", offset)
        if limit == 0:
            return []

        cost = _cost_subquery()
        q = (
            select(Order, func.coalesce(cost.c.cost, 0))
            .outerjoin(cost, cost.c.order_id == Order.id)
            .where(Order.user_id == user_id)
            .order_by(Order.created_at, Order.id)
            .limit(limit)
            .offset(offset)
        )
        with self.gateway.transaction() as session:
            return [_to_view(order, total) for order, total in session.execute(q)]

    def complete_order(self, order_id):
        """Mark the order completed. Completing it again changes nothing."""
        with self.gateway.transaction() as session:
            order = self._lock_order(session, order_id)
            if order.completed:
                logger.info(f"Order {order_id} already completed")
                return
            order.completed = True
        logger.info(f"Order completed: {order_id}")

    def add_product(self, product_id, order_id, quantity):
        require_positive_int("quantity", quantity)

        with self.gateway.transaction() as session:
            order = self._lock_order(session, order_id)
            if order.completed:
                raise ValidationError(f"order {order_id} is already completed")

            # exclusive row lock until commit/rollback; concurrent adds of the
            # same product queue up here
            product = session.execute(
                select(Product)
                .where(Product.id == product_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if product is None:
                raise NotFoundError(f"product {product_id} not found")

            if session.get(OrderContent, (order_id, product_id)) is not None:
                raise ConflictError(f"product {product_id} is already in order {order_id}")

            if quantity > product.quantity:
                logger.warning(
                    f"Not enough stock for product {product_id}. "
                    f"Available: {product.quantity}, Requested: {quantity}"
                )
                raise InsufficientStockError()

            session.add(OrderContent(
                order_id=order_id,
                product_id=product_id,
                price=product.price,
                quantity=quantity,
            ))
            product.quantity -= quantity
            session.flush()

        logger.info(f"Product {product_id} x{quantity} added to order {order_id}")

    def delete_product(self, product_id, order_id):
        with self.gateway.transaction() as session:
            order = self._lock_order(session, order_id)
            if order.completed:
                raise ValidationError(f"order {order_id} is already completed")

            line = session.get(OrderContent, (order_id, product_id))
            if line is None:
                raise NotFoundError(f"product {product_id} is not in order {order_id}")
            session.delete(line)

        logger.info(f"Product {product_id} removed from order {order_id}")

    def _lock_order(self, session, order_id):
        order = session.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"order {order_id} not found")
        return order

    # ==================== PRODUCTS ====================

    def create_product(self, price, quantity, description="", tags=None):
        require_non_negative_int("price", price)
        require_non_negative_int("quantity", quantity)

        with self.gateway.transaction() as session:
            product = Product(
                id=str(uuid.uuid4()),
                price=price,
                quantity=quantity,
                description=description or "",
                tags=list(tags or []),
            )
            session.add(product)
            session.flush()
            data = product.to_dict()

        logger.info(f"Product created: {data['id']}")
        return data

    def get_product(self, product_id):
        with self.gateway.transaction() as session:
            product = session.get(Product, product_id)
            if product is None:
                raise NotFoundError(f"product {product_id} not found")
            return product.to_dict()

    def list_products(self, limit, offset):
        require_non_negative_int("limit", limit)
        require_non_negative_int("offset", offset)
        if limit == 0:
            return []

        q = select(Product).order_by(Product.id).limit(limit).offset(offset)
        with self.gateway.transaction() as session:
            return [p.to_dict() for p in session.execute(q).scalars()]

    def update_product(self, product_id, price, quantity, description="", tags=None):
        """Replace a product's fields. Lines already in orders keep their price."""
        require_non_negative_int("price", price)
        require_non_negative_int("quantity", quantity)

        with self.gateway.transaction() as session:
            product = session.execute(
                select(Product)
                .where(Product.id == product_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if product is None:
                raise NotFoundError(f"product {product_id} not found")

            product.price = price
            product.quantity = quantity
            product.description = description or ""
            product.tags = list(tags or [])
            session.flush()
            data = product.to_dict()

        logger.info(f"Product updated: {product_id}")
        return data
