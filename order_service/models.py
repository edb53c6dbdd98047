from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone

db = SQLAlchemy()


def utcnow():
    return datetime.now(timezone.utc)


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.String(36), primary_key=True)
    email = db.Column(db.String(128), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    firstname = db.Column(db.String(100), nullable=False)
    lastname = db.Column(db.String(100), nullable=False)
    age = db.Column(db.Integer, nullable=False)
    is_married = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    # no cascade: a user that still owns orders cannot be removed
    orders = db.relationship("Order", back_populates="user", passive_deletes="all")

    def to_dict(self):
        return {
            "id": self.id,
            "firstname": self.firstname,
            "lastname": self.lastname,
            "email": self.email,
            "age": self.age,
            "is_married": self.is_married,
        }

    def __repr__(self):
        return f"<User {self.email}>"


class Product(db.Model):
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("price >= 0", name="ck_products_price"),
        db.CheckConstraint("quantity >= 0", name="ck_products_quantity"),
    )

    id = db.Column(db.String(36), primary_key=True)
    price = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    tags = db.Column(db.JSON, nullable=False, default=list)

    def to_dict(self):
        return {
            "id": self.id,
            "price": self.price,
            "quantity": self.quantity,
            "description": self.description,
            "tags": list(self.tags or []),
        }

    def __repr__(self):
        return f"<Product {self.id} - {self.quantity} in stock>"


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.String(36), primary_key=True)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    completed = db.Column(db.Boolean, nullable=False, default=False)

    user = db.relationship("User", back_populates="orders")
    content = db.relationship("OrderContent", back_populates="order", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Order {self.id} | user {self.user_id}>"


# Order lines. price is the product price at the moment
# the line was added and is never rewritten.
class OrderContent(db.Model):
    __tablename__ = "orders_content"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_orders_content_quantity"),
    )

    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), primary_key=True)
    product_id = db.Column(db.String(36), db.ForeignKey("products.id"), primary_key=True)
    price = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    order = db.relationship("Order", back_populates="content")
    product = db.relationship("Product")

    def __repr__(self):
        return f"<OrderContent {self.order_id}/{self.product_id} x{self.quantity}>"
