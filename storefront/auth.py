"""Telegram WebApp init-data verification and session tokens.

Init data arrives as a URL-encoded query string signed by Telegram with a key
derived from the bot token:

    secret = HMAC_SHA256(key="WebAppData", msg=bot_token)
    hash   = hex(HMAC_SHA256(key=secret, msg=data_check_string))

where ``data_check_string`` is every field except ``hash``, sorted by key and
joined as ``key=value`` lines.
"""
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode

from jose import JWTError, jwt
from pydantic import ValidationError

from .config import Settings
from .errors import AuthenticationError, AuthFailure
from .schemas import TelegramUser
from .users import UserService, public_profile

logger = logging.getLogger(__name__)

SESSION_TOKEN = "session"
ADMIN_TOKEN = "admin"


def parse_init_data(raw: str) -> Dict[str, str]:
    return dict(parse_qsl(raw, keep_blank_values=True))


def build_data_check_string(fields: Dict[str, str]) -> str:
    return "\n".join(f"{key}={fields[key]}" for key in sorted(fields) if key != "hash")


def compute_init_data_hash(data_check_string: str, bot_token: str) -> str:
    secret_key = hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()
    return hmac.new(secret_key, data_check_string.encode(), hashlib.sha256).hexdigest()


def sign_init_data(fields: Dict[str, Any], bot_token: str) -> str:
    """Produce init data the way Telegram does. Used by tests and local tooling."""
    values = {}
    for key, value in fields.items():
        if isinstance(value, dict):
            value = json.dumps(value, separators=(",", ":"))
        values[key] = str(value)
    values["hash"] = compute_init_data_hash(build_data_check_string(values), bot_token)
    return urlencode(values)


def verify_init_data(raw: str, bot_token: Optional[str], max_age: int = 86400, now: Optional[float] = None) -> Dict[str, Any]:
    """Check signature and age of init data and return its fields.

    The returned mapping carries the decoded Telegram user under ``user``.
    """
    if not bot_token:
        raise AuthenticationError(AuthFailure.NOT_CONFIGURED)

    fields = parse_init_data(raw or "")
    received = fields.pop("hash", None)
    if not received:
        raise AuthenticationError(AuthFailure.INVALID_SIGNATURE)

    expected = compute_init_data_hash(build_data_check_string(fields), bot_token)
    if not hmac.compare_digest(expected, received):
        raise AuthenticationError(AuthFailure.INVALID_SIGNATURE)

    try:
        auth_date = int(fields.get("auth_date", "0"))
    except ValueError:
        auth_date = 0
    current = int(now if now is not None else time.time())
    if current - auth_date > max_age:
        raise AuthenticationError(AuthFailure.EXPIRED)

    user_json = fields.get("user")
    if not user_json:
        raise AuthenticationError(AuthFailure.MISSING_USER)
    try:
        user = TelegramUser.model_validate_json(user_json)
    except ValidationError:
        raise AuthenticationError(AuthFailure.MISSING_USER)

    return {**fields, "auth_date": auth_date, "user": user}


class TokenService:
    def __init__(self, settings: Settings):
        self.secret_key = settings.secret_key
        self.algorithm = settings.algorithm
        self.session_ttl = timedelta(minutes=settings.session_token_expire_minutes)
        self.admin_ttl = timedelta(minutes=settings.admin_token_expire_minutes)

    def _encode(self, claims: Dict[str, Any], ttl: timedelta) -> str:
        to_encode = claims.copy()
        to_encode["exp"] = datetime.now(timezone.utc) + ttl
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def issue_session_token(self, user: Dict[str, Any]) -> str:
        return self._encode(
            {
                "sub": user["id"],
                "telegramId": user["telegramId"],
                "firstName": user.get("firstName"),
                "username": user.get("username"),
                "type": SESSION_TOKEN,
            },
            self.session_ttl,
        )

    def issue_admin_token(self, admin: Dict[str, Any]) -> str:
        return self._encode(
            {"sub": admin["id"], "email": admin["email"], "role": admin.get("role", "admin"), "type": ADMIN_TOKEN},
            self.admin_ttl,
        )

    def decode(self, token: str, expected_type: str) -> Dict[str, Any]:
        try:
            claims = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError:
            raise AuthenticationError(AuthFailure.TOKEN_INVALID)
        if claims.get("type") != expected_type or not claims.get("sub"):
            raise AuthenticationError(AuthFailure.TOKEN_INVALID)
        return claims


class AuthService:
    def __init__(self, users: UserService, tokens: TokenService, settings: Settings):
        self.users = users
        self.tokens = tokens
        self.settings = settings

    def authenticate_telegram(self, init_data: str) -> Dict[str, Any]:
        try:
            verified = verify_init_data(init_data, self.settings.telegram_bot_token, self.settings.init_data_max_age)
        except AuthenticationError as e:
            logger.warning("Telegram init data rejected: %s", e.reason.value)
            raise
        return self.users.provision(verified["user"])

    def login(self, user: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "access_token": self.tokens.issue_session_token(user),
            "token_type": "bearer",
            "user": public_profile(user),
        }

    def validate_token(self, token: str) -> Dict[str, Any]:
        claims = self.tokens.decode(token, SESSION_TOKEN)
        user = self.users.find_by_telegram_id(claims.get("telegramId"), fresh=True)
        if not user or not user.get("isActive", True):
            raise AuthenticationError(AuthFailure.TOKEN_INVALID)
        return user

    def webapp_url(self, start_param: Optional[str] = None) -> Optional[str]:
        bot = self.settings.telegram_bot_username
        if not bot:
            return None
        base_url = f"https://t.me/{bot}/app"
        return f"{base_url}?{urlencode({'startapp': start_param})}" if start_param else base_url
