import json
import logging
import secrets
import time

import jwt
from werkzeug.security import check_password_hash, generate_password_hash

from order_service.errors import InvalidCredentialsError, UnauthorizedError

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"


class RefreshTokenRecord:
    def __init__(self, token_id, user_id, expires_at, used=False):
        self.token_id = token_id
        self.user_id = user_id
        self.expires_at = expires_at
        self.used = used

    def to_bytes(self):
        return json.dumps({
            "token_id": self.token_id,
            "user_id": self.user_id,
            "expires_at": self.expires_at,
            "used": self.used,
        }).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw):
        return cls(**json.loads(raw))


class TokenPair:
    def __init__(self, access_token, refresh_token, expires_in):
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.expires_in = expires_in

    def to_dict(self):
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": "Bearer",
            "expires_in": self.expires_in,
        }


class AuthService:
    # Refresh tokens are opaque ids whose records live in the TokenCache.
    # A rotated id stays in the cache marked as used until it would have
    # expired, so a replay is told apart from an unknown id.

    def __init__(self, secret, cache, access_ttl=15 * 60, refresh_ttl=30 * 24 * 60 * 60,
                 algorithm="HS256", clock=time.time):
        if not secret:
            raise ValueError("a JWT secret is required")
        if refresh_ttl <= access_ttl:
            raise ValueError("refresh tokens must outlive access tokens")
        self.secret = secret
        self.cache = cache
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.algorithm = algorithm
        self.clock = clock
        # verified when the email is unknown so both failure paths cost the same
        self._dummy_hash = generate_password_hash(secrets.token_urlsafe(16))

    def create_access_token(self, user_id):
        now = self.clock()
        payload = {
            "sub": str(user_id),
            "type": ACCESS_TOKEN_TYPE,
            "iat": int(now),
            "exp": int(now + self.access_ttl),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def create_refresh_token(self, user_id):
        record = RefreshTokenRecord(
            token_id=secrets.token_urlsafe(32),
            user_id=str(user_id),
            expires_at=self.clock() + self.refresh_ttl,
        )
        self.cache.put(record.token_id, record.to_bytes(), self.refresh_ttl)
        return record.token_id

    def issue_tokens(self, user_id):
        return TokenPair(
            access_token=self.create_access_token(user_id),
            refresh_token=self.create_refresh_token(user_id),
            expires_in=self.access_ttl,
        )

    def login(self, user, password):
        """
        Check ``password`` for ``user`` (``None`` when the email is unknown)
        and issue a token pair. Both failure cases raise the same error after
        the same amount of hashing work.
        """
        password_hash = user.password_hash if user is not None else self._dummy_hash
        if not isinstance(password, str):
            password = ""
        matches = check_password_hash(password_hash, password)
        if user is None or not matches:
            raise InvalidCredentialsError()
        logger.info(f"User logged in: {user.id}")
        return self.issue_tokens(user.id)

    def validate_access_token(self, token):
        """Return the user id carried by a valid, unexpired access token."""
        if not token:
            raise UnauthorizedError("the correct token is required for authorization")
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                options={"require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            logger.info("Access token rejected: expired")
            raise UnauthorizedError("token has expired")
        except jwt.InvalidTokenError as e:
            logger.warning(f"Access token rejected: {e}")
            raise UnauthorizedError()

        if payload.get("type") != ACCESS_TOKEN_TYPE:
            logger.warning("Access token rejected: wrong token type")
            raise UnauthorizedError()
        return payload["sub"]

    def rotate_refresh_token(self, token_id):
        if not token_id:
            raise UnauthorizedError("invalid refresh token")

        raw = self.cache.pop(token_id)
        if raw is None:
            logger.warning("Refresh failed: unknown or expired refresh token")
            raise UnauthorizedError("invalid refresh token")

        record = RefreshTokenRecord.from_bytes(raw)
        now = self.clock()
        if record.used:
            logger.warning(f"Refresh token reuse detected for user {record.user_id}")
            self._remember_used(record, now)
            raise UnauthorizedError("invalid refresh token")
        if record.expires_at <= now:
            logger.warning(f"Refresh failed: expired refresh token for user {record.user_id}")
            raise UnauthorizedError("invalid refresh token")

        self._remember_used(record, now)
        tokens = self.issue_tokens(record.user_id)
        logger.info(f"Token refreshed for user: {record.user_id}")
        return tokens

    def revoke_refresh_token(self, token_id):
        if token_id and self.cache.delete(token_id):
            logger.info("Refresh token revoked")

    def _remember_used(self, record, now):
        remaining = record.expires_at - now
        if remaining > 0:
            used = RefreshTokenRecord(record.token_id, record.user_id, record.expires_at, used=True)
            self.cache.put(record.token_id, used.to_bytes(), remaining)
