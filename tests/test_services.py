"""Tests for the user, product and order application services."""

import logging

import pytest

from order_service.errors import (
    ConflictError,
    InsufficientStockError,
    InvalidCredentialsError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from order_service.services import OrderService, ProductService, UserService
from tests.conftest import signup_data


@pytest.fixture()
def orders(engine):
    return OrderService(engine)


@pytest.fixture()
def products(engine):
    return ProductService(engine)


class TestSignup:
    def test_returns_profile_and_tokens(self, users, auth):
        profile, tokens = users.signup(signup_data())

        assert profile["email"] == "anna@example.com"
        assert "password" not in profile and "password_hash" not in profile
        assert auth.validate_access_token(tokens.access_token) == profile["id"]

    def test_duplicate_email(self, users, user_id):
        with pytest.raises(ConflictError):
            users.signup(signup_data(email="ANNA@example.com"))

    def test_duplicate_that_slips_past_the_lookup_is_a_conflict(self, users, user_id, monkeypatch):
        # a concurrent signup commits between the lookup and the insert
        monkeypatch.setattr(UserService, "_find_by_email", staticmethod(lambda session, email: None))
        with pytest.raises(ConflictError):
            users.signup(signup_data())

    @pytest.mark.parametrize("overrides", [
        {"firstname": "A"},
        {"lastname": ""},
        {"email": "not-an-email"},
        {"password": "short", "repeat_password": "short"},
        {"repeat_password": "something-else"},
        {"age": 17},
        {"age": "30"},
        {"age": 2**70},
    ])
    def test_validation(self, users, overrides):
        with pytest.raises(ValidationError):
            users.signup(signup_data(**overrides))


class TestLogin:
    def test_login_with_correct_password(self, users, auth, user_id):
        tokens = users.login("anna@example.com", "correct-horse")
        assert auth.validate_access_token(tokens.access_token) == user_id

    def test_unknown_email_and_wrong_password_are_indistinguishable(self, users, user_id):
        with pytest.raises(InvalidCredentialsError) as unknown:
            users.login("a@b.com", "secret")
        with pytest.raises(InvalidCredentialsError) as wrong:
            users.login("anna@example.com", "secret")
        assert str(unknown.value) == str(wrong.value)

    @pytest.mark.parametrize("password", [12345678, None, ["x"]])
    def test_non_string_password_fails_like_a_wrong_one(self, users, user_id, password):
        with pytest.raises(InvalidCredentialsError):
            users.login("anna@example.com", password)
        with pytest.raises(InvalidCredentialsError):
            users.login("a@b.com", password)

    def test_refresh_then_replay(self, users, user_id):
        tokens = users.login("anna@example.com", "correct-horse")
        users.refresh(tokens.refresh_token)
        with pytest.raises(UnauthorizedError):
            users.refresh(tokens.refresh_token)

    def test_logout_revokes_refresh_token(self, users, user_id):
        tokens = users.login("anna@example.com", "correct-horse")
        users.logout(tokens.refresh_token)
        with pytest.raises(UnauthorizedError):
            users.refresh(tokens.refresh_token)


class TestProfile:
    def test_update_fields(self, users, user_id):
        profile = users.update_profile(user_id, {"firstname": "Hanna", "is_married": True})
        assert profile["firstname"] == "Hanna"
        assert profile["is_married"] is True

    def test_nothing_to_update(self, users, user_id):
        with pytest.raises(ValidationError):
            users.update_profile(user_id, {})

    def test_password_change_requires_old_password(self, users, user_id):
        with pytest.raises(ValidationError):
            users.update_profile(user_id, {"old_password": "wrong-password", "new_password": "new-password"})

        users.update_profile(user_id, {"old_password": "correct-horse", "new_password": "new-password"})

        users.login("anna@example.com", "new-password")
        with pytest.raises(InvalidCredentialsError):
            users.login("anna@example.com", "correct-horse")

    def test_email_taken(self, users, user_id):
        users.signup(signup_data(email="bob@example.com"))
        with pytest.raises(ConflictError):
            users.update_profile(user_id, {"email": "bob@example.com"})

    def test_email_taken_past_the_lookup(self, users, user_id, monkeypatch):
        users.signup(signup_data(email="bob@example.com"))
        monkeypatch.setattr(UserService, "_find_by_email", staticmethod(lambda session, email: None))
        with pytest.raises(ConflictError):
            users.update_profile(user_id, {"email": "bob@example.com"})
        assert users.get_profile(user_id)["email"] == "anna@example.com"

    def test_old_password_must_be_a_string(self, users, user_id):
        with pytest.raises(ValidationError):
            users.update_profile(user_id, {"old_password": 12345678, "new_password": "new-password"})

    def test_unknown_user(self, users):
        with pytest.raises(NotFoundError):
            users.get_profile("no-such-user")

    def test_delete(self, users, user_id):
        users.delete(user_id)
        with pytest.raises(NotFoundError):
            users.get_profile(user_id)

    def test_user_with_orders_cannot_be_deleted(self, users, orders, user_id):
        orders.create(user_id)
        with pytest.raises(ConflictError):
            users.delete(user_id)
        assert users.get_profile(user_id)["id"] == user_id


class TestOrders:
    def test_full_flow(self, orders, products, user_id):
        product = products.create({"price": 300, "quantity": 4, "tags": ["a"]})
        order = orders.create(user_id)

        orders.add_product(user_id, order.id, product["id"], 2)
        orders.complete(user_id, order.id)

        fetched = orders.get(user_id, order.id)
        assert fetched.cost == 600
        assert fetched.completed is True
        assert products.get(product["id"])["quantity"] == 2

    def test_other_users_order_is_not_found(self, users, orders, products, user_id):
        other, _ = users.signup(signup_data(email="bob@example.com"))
        product = products.create({"price": 1, "quantity": 4})
        order = orders.create(user_id)

        with pytest.raises(NotFoundError):
            orders.get(other["id"], order.id)
        with pytest.raises(NotFoundError):
            orders.add_product(other["id"], order.id, product["id"], 1)
        with pytest.raises(NotFoundError):
            orders.complete(other["id"], order.id)
        assert products.get(product["id"])["quantity"] == 4

    def test_list_page(self, orders, user_id):
        orders.create(user_id)
        page = orders.list(user_id, 5, 0)
        assert page["limit"] == 5
        assert page["offset"] == 0
        assert len(page["orders"]) == 1

    def test_refusals_are_logged_as_warnings(self, orders, products, user_id, caplog):
        product = products.create({"price": 1, "quantity": 1})
        order = orders.create(user_id)

        with caplog.at_level(logging.WARNING, logger="order_service.services"):
            with pytest.raises(InsufficientStockError):
                orders.add_product(user_id, order.id, product["id"], 2)

        assert "Failed to add product to order" in caplog.text


class TestProducts:
    def test_update(self, products):
        product = products.create({"price": 5, "quantity": 1})
        updated = products.update({"id": product["id"], "price": 6, "quantity": 9, "tags": ["x"]})
        assert updated["price"] == 6
        assert updated["quantity"] == 9
        assert updated["tags"] == ["x"]

    def test_update_requires_id(self, products):
        with pytest.raises(ValidationError):
            products.update({"price": 1, "quantity": 1})

    def test_tags_must_be_strings(self, products):
        with pytest.raises(ValidationError):
            products.create({"price": 1, "quantity": 1, "tags": [1, 2]})
