"""Account and bearer-token handling for the tasksync server.

Tokens are HS256 JWTs carrying a ``userId`` claim and an expiry. Every
sync endpoint is wrapped in ``Authenticator.required``, which resolves the
caller to ``g.user_id`` or raises AuthError (401).

Endpoints (prefix /api/auth):
    POST /register          Create an account, returns token
    POST /force-register    Replace any account with that email, returns token
    POST /login             Exchange credentials for a token
    GET  /verify            Check a token, returns the user
    POST /change-password   Change the caller's password
"""

from __future__ import annotations

import functools
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from flask import Blueprint, g, jsonify, request
from jose import JWTError, jwt
from uuid6 import uuid7
from werkzeug.security import check_password_hash, generate_password_hash

from .api import AuthError, api_endpoint, get_json_body
from .database import Database
from .timestamp_utils import now_ms
from .validation import (
    MIN_PASSWORD_LENGTH,
    ValidationError,
    validate_email,
    validate_password,
)

logger = logging.getLogger(__name__)

__all__ = ["Authenticator", "create_auth_blueprint"]

TOKEN_ALGORITHM = "HS256"


class Authenticator:
    """Issues and checks bearer tokens.

    Attributes:
        db: Database used to confirm the token's user still exists
        ttl: Token lifetime
    """

    def __init__(self, db: Database, secret_key: str, ttl_days: float = 30) -> None:
        self.db = db
        self._secret_key = secret_key
        self.ttl = timedelta(days=ttl_days)

    def issue_token(self, user_id: str) -> str:
        """Create a signed token for a user."""
        issued = datetime.now(tz=timezone.utc)
        claims = {
            "userId": user_id,
            "iat": int(issued.timestamp()),
            "exp": int((issued + self.ttl).timestamp()),
        }
        return jwt.encode(claims, self._secret_key, algorithm=TOKEN_ALGORITHM)

    def user_id_from_token(self, token: str) -> str:
        """Decode a token and return its user ID.

        Raises:
            AuthError: if the token is malformed, badly signed or expired
        """
        try:
            claims = jwt.decode(token, self._secret_key, algorithms=[TOKEN_ALGORITHM])
        except JWTError as e:
            raise AuthError(f"Invalid or expired token: {e}") from None
        user_id = claims.get("userId")
        if not isinstance(user_id, str) or not user_id:
            raise AuthError("Token has no user")
        return user_id

    def authenticate_request(self) -> Dict[str, Any]:
        """Resolve the current request's bearer token to a user."""
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthError("Missing bearer token")
        user = self.db.get_user(self.user_id_from_token(token.strip()))
        if user is None:
            raise AuthError("User no longer exists")
        return user

    def required(self, func: Callable) -> Callable:
        """Decorator: reject the request with 401 unless it carries a valid token."""
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            user = self.authenticate_request()
            g.user = user
            g.user_id = user["id"]
            return func(*args, **kwargs)
        return wrapper


def _validate_name(name: Any) -> str:
    if name is None:
        return ""
    if not isinstance(name, str):
        raise ValidationError("name", f"must be a string, got {type(name).__name__}")
    return name.strip()


def create_auth_blueprint(
    db: Database,
    authenticator: Authenticator,
    clock: Callable[[], int] = now_ms,
) -> Blueprint:
    """Create Flask blueprint for account endpoints.

    Args:
        db: Database instance
        authenticator: Token issuer/checker shared with the sync blueprint
        clock: Source of epoch milliseconds for createdAt

    Returns:
        Flask Blueprint with auth routes
    """
    auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")

    def _create_account(email: str, password: str, name: str) -> Dict[str, Any]:
        user_id = uuid7().hex
        try:
            return db.create_user(
                user_id, email, generate_password_hash(password), name, clock()
            )
        except sqlite3.IntegrityError:
            raise ValidationError("email", "is already registered") from None

    def _auth_response(user: Dict[str, Any]) -> Tuple[Any, int]:
        return jsonify({
            "success": True,
            "token": authenticator.issue_token(user["id"]),
            "user": {"id": user["id"], "email": user["email"], "name": user["name"]},
        }), 200

    @auth_bp.route("/register", methods=["POST"])
    @api_endpoint
    def register() -> Tuple[Any, int]:
        """Create an account.

        Request body:
            {"email": "...", "password": "...", "name": "..."}
        """
        data = get_json_body()
        email = validate_email(data.get("email"))
        password = validate_password(data.get("password"))
        name = _validate_name(data.get("name"))

        with db.transaction():
            if db.get_user_by_email(email):
                raise ValidationError("email", "is already registered")
            user = _create_account(email, password, name)

        logger.info(f"Registered user {user['id']}")
        return _auth_response(user)

    @auth_bp.route("/force-register", methods=["POST"])
    @api_endpoint
    def force_register() -> Tuple[Any, int]:
        """Register, first deleting any existing account with that email."""
        data = get_json_body()
        email = validate_email(data.get("email"))
        password = validate_password(data.get("password"))
        name = _validate_name(data.get("name"))

        with db.transaction():
            existing = db.get_user_by_email(email)
            if existing:
                db.delete_user(existing["id"])
                logger.warning(f"Force-register replaced account {existing['id']}")
            user = _create_account(email, password, name)

        logger.info(f"Registered user {user['id']}")
        return _auth_response(user)

    @auth_bp.route("/login", methods=["POST"])
    @api_endpoint
    def login() -> Tuple[Any, int]:
        """Exchange email and password for a token."""
        data = get_json_body()
        email = validate_email(data.get("email"))
        password = validate_password(data.get("password"))

        user = db.get_user_by_email(email)
        if not user:
            raise ValidationError("email", "no account with this email")
        if not check_password_hash(user["password_hash"], password):
            raise ValidationError("password", "incorrect password")

        logger.info(f"User {user['id']} logged in")
        return _auth_response(user)

    @auth_bp.route("/verify", methods=["GET"])
    @api_endpoint
    @authenticator.required
    def verify() -> Tuple[Any, int]:
        """Check the bearer token and return the user."""
        return jsonify({"success": True, "user": g.user}), 200

    @auth_bp.route("/change-password", methods=["POST"])
    @api_endpoint
    @authenticator.required
    def change_password() -> Tuple[Any, int]:
        """Change the caller's password.

        Request body:
            {"currentPassword": "...", "newPassword": "..."}
        """
        data = get_json_body()
        current = validate_password(data.get("currentPassword"), "currentPassword")
        new = validate_password(
            data.get("newPassword"), "newPassword", min_length=MIN_PASSWORD_LENGTH
        )

        user: Optional[Dict[str, Any]] = db.get_user_by_email(g.user["email"])
        if not user or not check_password_hash(user["password_hash"], current):
            raise ValidationError("currentPassword", "incorrect password")

        db.update_user_password(g.user_id, generate_password_hash(new))
        logger.info(f"User {g.user_id} changed password")
        return jsonify({"success": True}), 200

    return auth_bp
