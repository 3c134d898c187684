import logging
import os
import re
from datetime import datetime, timedelta, timezone
from functools import wraps

import bcrypt
import jwt
from dotenv import load_dotenv
from flask import request, jsonify

load_dotenv()

logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET")
if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET is required")

JWT_EXPIRE_DAYS = int(os.getenv("JWT_EXPIRE_DAYS", 30))

MIN_PASSWORD_LENGTH = 6
USERNAME_PATTERN = re.compile(r"^[a-z0-9_.-]{3,32}$")


def credential_problem(username, password):
    """Message explaining why a new learner's credentials are refused, or None."""
    if not USERNAME_PATTERN.match(username):
        return "Username must be 3-32 characters of letters, digits, '.', '_' or '-'"
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
    return None


def hash_password(password):
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def check_password(password, hashed):
    return bcrypt.checkpw(password.encode(), hashed.encode())


def generate_token(learner_id, username):
    """Signed session token for a learner, valid for JWT_EXPIRE_DAYS."""
    issued = datetime.now(timezone.utc)
    return jwt.encode({
        "user_id": learner_id,
        "username": username,
        "iat": issued,
        "exp": issued + timedelta(days=JWT_EXPIRE_DAYS),
    }, JWT_SECRET, algorithm="HS256")


def decode_token(token):
    """Return the token payload, or None if it is invalid or expired."""
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except jwt.InvalidTokenError as e:
        logger.debug("Rejected token: %s", e)
        return None


def bearer_token():
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def token_required(f):
    """Route decorator exposing the learner as request.user_id / request.username."""
    @wraps(f)
    def wrapper(*args, **kwargs):
        token = bearer_token()
        data = decode_token(token) if token else None
        if not data:
            return jsonify({"error": "Log in to review your vocabulary"}), 401

        request.user_id = data["user_id"]
        request.username = data["username"]
        return f(*args, **kwargs)
    return wrapper
