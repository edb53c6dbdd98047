import pytest

from order_service.app import create_app
from order_service.config import Config
from order_service.models import db
from order_service.services import UserService


@pytest.fixture()
def app(tmp_path):
    class TestConfig(Config):
        TESTING = True
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'orders.db'}"
        JWT_SECRET_KEY = "test-secret-with-enough-bytes-for-hs256"
        TOKEN_CACHE_BYTES = 1024 * 1024
        RATELIMIT_ENABLED = False

    app = create_app(TestConfig)
    yield app
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def app_ctx(app):
    with app.app_context():
        yield


@pytest.fixture()
def engine(app, app_ctx):
    return app.extensions["order_service"]["engine"]


@pytest.fixture()
def gateway(app, app_ctx):
    return app.extensions["order_service"]["gateway"]


@pytest.fixture()
def auth(app):
    return app.extensions["order_service"]["auth"]


@pytest.fixture()
def users(gateway, auth):
    return UserService(gateway, auth)


def signup_data(**overrides):
    data = {
        "firstname": "Anna",
        "lastname": "Smith",
        "email": "anna@example.com",
        "password": "correct-horse",
        "repeat_password": "correct-horse",
        "age": 30,
        "is_married": False,
    }
    data.update(overrides)
    return data


@pytest.fixture()
def user_id(users):
    profile, _ = users.signup(signup_data())
    return profile["id"]
