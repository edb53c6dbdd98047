from functools import wraps
import logging

from flask import Flask, request, jsonify
from flasgger import Swagger
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException

from order_service.auth import AuthService
from order_service.config import Config
from order_service.errors import AppError, UnauthorizedError, ValidationError
from order_service.inventory import InventoryEngine
from order_service.models import db
from order_service.services import OrderService, ProductService, UserService
from order_service.storage import Gateway, configure_engine
from order_service.token_cache import TokenCache

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")
    return data


def int_arg(name, default=None):
    raw = request.args.get(name)
    if raw is None or raw == "":
        if default is None:
            raise ValidationError(f"failed to parse parameter {name}")
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"failed to parse parameter {name}")


def create_app(config=Config):
    app = Flask(__name__)
    app.config.from_object(config)
    app.json.sort_keys = False

    if not app.config.get("JWT_SECRET_KEY"):
        raise RuntimeError("JWT_SECRET_KEY is not configured")

    swagger_config = {
        "headers": [],
        "specs": [
            {
                "endpoint": 'apispec',
                "route": '/apispec.json',
                "rule_filter": lambda rule: True,
                "model_filter": lambda tag: True,
            }
        ],
        "static_url_path": "/flasgger_static",
        "swagger_ui": True,
        "specs_route": "/apidocs/"
    }
    swagger_template = {
        "securityDefinitions": {
            "Bearer": {"type": "apiKey", "name": "Authorization", "in": "header"}
        }
    }
    Swagger(app, config=swagger_config, template=swagger_template)

    CORS(
        app,
        origins=app.config["CORS_ORIGINS"],
        methods=["GET", "PUT", "POST", "PATCH", "DELETE"],
        allow_headers=["Authorization", "Content-Type"],
    )
    # RATELIMIT_DEFAULT, RATELIMIT_STORAGE_URI and RATELIMIT_ENABLED come from app.config
    limiter = Limiter(get_remote_address, app=app)

    db.init_app(app)

    with app.app_context():
        configure_engine(db.engine, app.config["DB_TIMEOUT"])
        db.create_all()

    gateway = Gateway(db, timeout=app.config["DB_TIMEOUT"])
    auth = AuthService(
        secret=app.config["JWT_SECRET_KEY"],
        cache=TokenCache(app.config["TOKEN_CACHE_BYTES"]),
        access_ttl=app.config["ACCESS_TOKEN_TTL"],
        refresh_ttl=app.config["REFRESH_TOKEN_TTL"],
        algorithm=app.config["JWT_ALGORITHM"],
    )
    engine = InventoryEngine(gateway)
    users = UserService(gateway, auth)
    products = ProductService(engine)
    orders = OrderService(engine)
    app.extensions["order_service"] = {
        "gateway": gateway,
        "auth": auth,
        "engine": engine,
    }

    def login_required(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            scheme, _, token = request.headers.get("Authorization", "").partition(" ")
            if scheme != "Bearer" or not token.strip():
                raise UnauthorizedError("the correct token is required for authorization")
            kwargs["user_id"] = auth.validate_access_token(token.strip())
            return f(*args, **kwargs)

        return decorated

    # ==================== SERVICE ====================

    @app.route("/", methods=["GET"])
    @limiter.exempt
    def home():
        """
        Service greeting
        ---
        tags:
          - Service
        responses:
          200:
            description: Service name
        """
        return f"Hello! It is {app.config['SERVICE_NAME']} service", 200, {"Content-Type": "text/html; charset=utf-8"}

    @app.route("/heartbeat", methods=["GET"])
    @limiter.exempt
    def heartbeat():
        """
        Liveness check
        ---
        tags:
          - Service
        responses:
          200:
            description: OK
        """
        return "OK", 200, {"Content-Type": "text/plain; charset=utf-8"}

    # ==================== USERS ====================

    @app.route("/signup", methods=["POST"])
    def signup():
        """
        Register a new user
        ---
        tags:
          - Users
        parameters:
          - name: body
            in: body
            required: true
            schema:
              type: object
              properties:
                firstname:
                  type: string
                lastname:
                  type: string
                email:
                  type: string
                  example: "user@example.com"
                password:
                  type: string
                repeat_password:
                  type: string
                age:
                  type: integer
                is_married:
                  type: boolean
        responses:
          201:
            description: User registered, tokens issued
          400:
            description: Validation error
          409:
            description: User already exists
        """
        profile, tokens = users.signup(json_body())
        return jsonify({"user": profile, **tokens.to_dict()}), 201

    @app.route("/auth", methods=["POST"])
    def login():
        """
        Log in and receive an access/refresh token pair
        ---
        tags:
          - Authentication
        parameters:
          - name: body
            in: body
            required: true
            schema:
              type: object
              properties:
                email:
                  type: string
                password:
                  type: string
        responses:
          200:
            description: Tokens issued
          401:
            description: Invalid email or password
        """
        data = json_body()
        tokens = users.login(data.get("email"), data.get("password"))
        return jsonify(tokens.to_dict())

    @app.route("/auth", methods=["PUT"])
    def refresh():
        """
        Exchange a refresh token for a new token pair. Each refresh token works once.
        ---
        tags:
          - Authentication
        parameters:
          - name: body
            in: body
            required: true
            schema:
              type: object
              properties:
                refresh_token:
                  type: string
        responses:
          200:
            description: New tokens
          401:
            description: Unknown, expired or already used refresh token
        """
        tokens = users.refresh(json_body().get("refresh_token"))
        return jsonify(tokens.to_dict())

    @app.route("/auth", methods=["DELETE"])
    def logout():
        """
        Revoke a refresh token
        ---
        tags:
          - Authentication
        responses:
          200:
            description: Token revoked
        """
        users.logout(json_body().get("refresh_token"))
        return jsonify({"message": "logged out"})

    @app.route("/profile", methods=["GET"])
    @login_required
    def get_profile(user_id):
        """
        Current user's profile
        ---
        tags:
          - Users
        security:
          - Bearer: []
        responses:
          200:
            description: Profile
          401:
            description: Authentication required
        """
        return jsonify(users.get_profile(user_id))

    @app.route("/profile", methods=["PATCH"])
    @login_required
    def update_profile(user_id):
        """
        Partially update the current user's profile
        ---
        tags:
          - Users
        security:
          - Bearer: []
        parameters:
          - name: body
            in: body
            required: true
            schema:
              type: object
              properties:
                firstname:
                  type: string
                lastname:
                  type: string
                email:
                  type: string
                is_married:
                  type: boolean
                old_password:
                  type: string
                new_password:
                  type: string
        responses:
          200:
            description: Updated profile
          400:
            description: Nothing to update or validation error
        """
        return jsonify(users.update_profile(user_id, json_body()))

    @app.route("/profile", methods=["DELETE"])
    @login_required
    def delete_profile(user_id):
        """
        Delete the current user
        ---
        tags:
          - Users
        security:
          - Bearer: []
        responses:
          200:
            description: User deleted
          409:
            description: User still has orders
        """
        users.delete(user_id)
        return jsonify({"message": "user deleted"})

    # ==================== PRODUCTS ====================

    @app.route("/products", methods=["POST"])
    def create_product():
        """
        Create a product
        ---
        tags:
          - Products
        parameters:
          - name: body
            in: body
            required: true
            schema:
              type: object
              properties:
                price:
                  type: integer
                  description: price in minor currency units
                quantity:
                  type: integer
                description:
                  type: string
                tags:
                  type: array
                  items:
                    type: string
        responses:
          201:
            description: Product created
        """
        return jsonify(products.create(json_body())), 201

    @app.route("/products", methods=["PUT"])
    def update_product():
        """
        Replace a product's price, stock, description and tags
        ---
        tags:
          - Products
        responses:
          200:
            description: Product updated
          404:
            description: Product not found
        """
        return jsonify(products.update(json_body()))

    @app.route("/products", methods=["GET"])
    def list_products():
        """
        List products
        ---
        tags:
          - Products
        parameters:
          - in: query
            name: limit
            type: integer
          - in: query
            name: offset
            type: integer
        responses:
          200:
            description: Page of products
        """
        limit = int_arg("limit", 20)
        offset = int_arg("offset", 0)
        return jsonify({"limit": limit, "offset": offset, "products": products.list(limit, offset)})

    @app.route("/products/<product_id>", methods=["GET"])
    def get_product(product_id):
        """
        Get a product
        ---
        tags:
          - Products
        parameters:
          - in: path
            name: product_id
            type: string
            required: true
        responses:
          200:
            description: Product
          404:
            description: Product not found
        """
        return jsonify(products.get(product_id))

    # ==================== ORDERS ====================

    @app.route("/orders", methods=["POST"])
    @login_required
    def create_order(user_id):
        """
        Create an empty order for the current user
        ---
        tags:
          - Orders
        security:
          - Bearer: []
        responses:
          201:
            description: Order created
        """
        return jsonify(orders.create(user_id).to_dict()), 201

    @app.route("/orders", methods=["GET"])
    @login_required
    def list_orders(user_id):
        """
        Current user's orders with their cost
        ---
        tags:
          - Orders
        security:
          - Bearer: []
        parameters:
          - in: query
            name: limit
            type: integer
          - in: query
            name: offset
            type: integer
        responses:
          200:
            description: Page of orders
        """
        if request.args.get("limit") and request.args.get("offset"):
            limit, offset = int_arg("limit"), int_arg("offset")
        else:
            limit, offset = 1, 0
        page = orders.list(user_id, limit, offset)
        page["orders"] = [o.to_dict() for o in page["orders"]]
        return jsonify(page)

    @app.route("/orders/<order_id>", methods=["GET"])
    @login_required
    def get_order(order_id, user_id):
        """
        Get an order
        ---
        tags:
          - Orders
        security:
          - Bearer: []
        parameters:
          - in: path
            name: order_id
            type: string
            required: true
        responses:
          200:
            description: Order with its cost
          404:
            description: Order not found
        """
        return jsonify(orders.get(user_id, order_id).to_dict())

    @app.route("/orders/complete/<order_id>", methods=["POST"])
    @login_required
    def complete_order(order_id, user_id):
        """
        Mark an order completed. Completing it again is a no-op.
        ---
        tags:
          - Orders
        security:
          - Bearer: []
        responses:
          200:
            description: Order completed
          404:
            description: Order not found
        """
        orders.complete(user_id, order_id)
        return jsonify({"message": "order completed"})

    @app.route("/orders/content/<order_id>", methods=["POST"])
    @login_required
    def add_product_to_order(order_id, user_id):
        """
        Add a product to an order, taking it out of stock
        ---
        tags:
          - Orders
        security:
          - Bearer: []
        parameters:
          - in: query
            name: product_id
            type: string
            required: true
          - in: query
            name: quantity
            type: integer
            required: true
        responses:
          200:
            description: Product added
          404:
            description: Order or product not found
          409:
            description: Not enough stock, or product already in the order
        """
        product_id = request.args.get("product_id")
        if not product_id:
            raise ValidationError("failed to parse parameter product_id")
        orders.add_product(user_id, order_id, product_id, int_arg("quantity"))
        return jsonify({"message": "product added"})

    @app.route("/orders/content/<order_id>", methods=["DELETE"])
    @login_required
    def delete_product_from_order(order_id, user_id):
        """
        Remove a product from an order. The quantity is not returned to stock.
        ---
        tags:
          - Orders
        security:
          - Bearer: []
        parameters:
          - in: query
            name: product_id
            type: string
            required: true
        responses:
          200:
            description: Product removed
          404:
            description: Order or order line not found
        """
        product_id = request.args.get("product_id")
        if not product_id:
            raise ValidationError("failed to parse parameter product_id")
        orders.delete_product(user_id, order_id, product_id)
        return jsonify({"message": "product deleted"})

    # Error handlers
    @app.errorhandler(AppError)
    def handle_app_error(error):
        return jsonify({"error": error.message}), error.status_code

    @app.errorhandler(Exception)
    def handle_exception(error):
        if isinstance(error, HTTPException):
            return jsonify({"error": error.description}), error.code
        logger.error(f"Unhandled exception: {str(error)}", exc_info=True)
        return jsonify({"error": "Internal server error"}), 500

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(400)
    def bad_request(error):
        return jsonify({"error": "Bad request"}), 400

    return app


if __name__ == "__main__":
    app = create_app()
    logger.info("Starting order-service on port 5000")
    app.run(host="0.0.0.0", port=5000, debug=False)
