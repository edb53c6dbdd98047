import logging
import re
import uuid
from functools import wraps

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from werkzeug.security import check_password_hash, generate_password_hash

from order_service.errors import (
    AppError,
    ConflictError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from order_service.inventory import MAX_INT
from order_service.models import Order, User
from order_service.storage import describe

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_NAME_LENGTH = 2
MIN_PASSWORD_LENGTH = 8
MIN_AGE = 18


def reported(action):
    """Log failures of a service method with the action being attempted."""
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            try:
                return f(*args, **kwargs)
            except PersistenceError as e:
                logger.error(f"Failed to {action}: {describe(e)}", exc_info=True)
                raise
            except AppError as e:
                logger.warning(f"Failed to {action}: {e.message}")
                raise
        return decorated
    return decorator


def _check_name(field, value):
    if not isinstance(value, str) or len(value.strip()) < MIN_NAME_LENGTH:
        raise ValidationError(f"{field} must be at least {MIN_NAME_LENGTH} characters")
    return value.strip()


def _check_email(value):
    if not isinstance(value, str) or not EMAIL_RE.match(value):
        raise ValidationError("email is not valid")
    return value.strip().lower()


def _check_password(field, value):
    if not isinstance(value, str) or len(value) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"{field} must be at least {MIN_PASSWORD_LENGTH} characters")
    return value


def _check_int(field, value, minimum=0):
    if isinstance(value, bool) or not isinstance(value, int) or not minimum <= value <= MAX_INT:
        raise ValidationError(f"{field} must be an integer between {minimum} and {MAX_INT}")
    return value


class UserService:
    def __init__(self, gateway, auth):
        self.gateway = gateway
        self.auth = auth

    @reported("create user")
    def signup(self, data):
        firstname = _check_name("firstname", data.get("firstname"))
        lastname = _check_name("lastname", data.get("lastname"))
        email = _check_email(data.get("email"))
        password = _check_password("password", data.get("password"))
        if password != data.get("repeat_password"):
            raise ValidationError("password does not match repeat password")
        age = _check_int("age", data.get("age"), MIN_AGE)
        is_married = bool(data.get("is_married", False))

        with self.gateway.transaction() as session:
            if self._find_by_email(session, email) is not None:
                raise ConflictError("user already exists")
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=generate_password_hash(password),
                firstname=firstname,
                lastname=lastname,
                age=age,
                is_married=is_married,
            )
            session.add(user)
            try:
                session.flush()
            except IntegrityError:
                # lost a race with a concurrent signup for the same email
                raise ConflictError("user already exists")
            profile = user.to_dict()

        logger.info(f"User registered: {profile['id']}")
        return profile, self.auth.issue_tokens(profile["id"])

    @reported("log in")
    def login(self, email, password):
        user = None
        with self.gateway.transaction() as session:
            if isinstance(email, str):
                user = self._find_by_email(session, email.strip().lower())
            if user is not None:
                session.expunge(user)
        return self.auth.login(user, password)

    @reported("refresh token")
    def refresh(self, refresh_token):
        return self.auth.rotate_refresh_token(refresh_token)

    @reported("log out")
    def logout(self, refresh_token):
        self.auth.revoke_refresh_token(refresh_token)

    @reported("get user")
    def get_profile(self, user_id):
        with self.gateway.transaction() as session:
            return self._get(session, user_id).to_dict()

    @reported("update user")
    def update_profile(self, user_id, data):
        changes = {}
        if data.get("firstname") is not None:
            changes["firstname"] = _check_name("firstname", data["firstname"])
        if data.get("lastname") is not None:
            changes["lastname"] = _check_name("lastname", data["lastname"])
        if data.get("email") is not None:
            changes["email"] = _check_email(data["email"])
        if data.get("is_married") is not None:
            changes["is_married"] = bool(data["is_married"])

        old_password = data.get("old_password")
        new_password = data.get("new_password")
        if old_password is not None and not isinstance(old_password, str):
            raise ValidationError("old_password must be a string")
        if old_password and new_password and old_password != new_password:
            _check_password("new_password", new_password)
        else:
            old_password = None

        if not changes and old_password is None:
            raise ValidationError("nothing to update")

        with self.gateway.transaction() as session:
            user = self._get(session, user_id)
            if old_password is not None:
                if not check_password_hash(user.password_hash, old_password):
                    raise ValidationError("old password does not match current password")
                user.password_hash = generate_password_hash(new_password)

            email = changes.get("email")
            if email and email != user.email:
                if self._find_by_email(session, email) is not None:
                    raise ConflictError("email is already taken")

            for field, value in changes.items():
                setattr(user, field, value)
            try:
                session.flush()
            except IntegrityError:
                raise ConflictError("email is already taken")
            profile = user.to_dict()

        logger.info(f"User updated: {user_id}")
        return profile

    @reported("delete user")
    def delete(self, user_id):
        with self.gateway.transaction() as session:
            user = self._get(session, user_id)
            orders = session.scalar(select(func.count()).select_from(Order).where(Order.user_id == user_id))
            if orders:
                raise ConflictError("user has orders and cannot be deleted")
            session.delete(user)
        logger.info(f"User deleted: {user_id}")

    @staticmethod
    def _find_by_email(session, email):
        return session.execute(select(User).where(User.email == email)).scalar_one_or_none()

    @staticmethod
    def _get(session, user_id):
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user


class ProductService:
    def __init__(self, engine):
        self.engine = engine

    @reported("create product")
    def create(self, data):
        return self.engine.create_product(
            price=data.get("price"),
            quantity=data.get("quantity"),
            description=data.get("description", ""),
            tags=_check_tags(data.get("tags")),
        )

    @reported("get product")
    def get(self, product_id):
        return self.engine.get_product(product_id)

    @reported("list products")
    def list(self, limit, offset):
        return self.engine.list_products(limit, offset)

    @reported("update product")
    def update(self, data):
        product_id = data.get("id")
        if not product_id:
            raise ValidationError("id is required")
        return self.engine.update_product(
            product_id,
            price=data.get("price"),
            quantity=data.get("quantity"),
            description=data.get("description", ""),
            tags=_check_tags(data.get("tags")),
        )


def _check_tags(tags):
    if tags is None:
        return []
    if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
        raise ValidationError("tags must be a list of strings")
    return tags


class OrderService:
    """Order operations on behalf of an authenticated user."""

    def __init__(self, engine):
        self.engine = engine

    @reported("create order")
    def create(self, user_id):
        return self.engine.create_order(user_id)

    @reported("get orders")
    def list(self, user_id, limit, offset):
        orders = self.engine.list_orders(user_id, limit, offset)
        return {"limit": limit, "offset": offset, "orders": orders}

    @reported("get order")
    def get(self, user_id, order_id):
        return self._owned(user_id, order_id)

    @reported("complete order")
    def complete(self, user_id, order_id):
        self._owned(user_id, order_id)
        self.engine.complete_order(order_id)

    @reported("add product to order")
    def add_product(self, user_id, order_id, product_id, quantity):
        self._owned(user_id, order_id)
        self.engine.add_product(product_id, order_id, quantity)

    @reported("delete product from order")
    def delete_product(self, user_id, order_id, product_id):
        self._owned(user_id, order_id)
        self.engine.delete_product(product_id, order_id)

    def _owned(self, user_id, order_id):
        # someone else's order looks exactly like a missing one
        order = self.engine.get_order(order_id)
        if order.user_id != user_id:
            raise NotFoundError(f"order {order_id} not found")
        return order
