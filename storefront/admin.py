import logging
from typing import Any, Dict

from passlib.context import CryptContext
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from .auth import ADMIN_TOKEN, TokenService
from .database import create_document, parse_object_id, serialize_doc, utcnow
from .errors import AuthenticationError, AuthFailure, ConflictError, InvalidIdError, PermissionDeniedError
from .schemas import Admin

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def admin_profile(admin: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": admin["id"],
        "email": admin["email"],
        "firstName": admin.get("firstName"),
        "lastName": admin.get("lastName"),
        "role": admin.get("role"),
        "permissions": admin.get("permissions", []),
    }


class AdminService:
    def __init__(self, db: Database, tokens: TokenService):
        self.db = db
        self.admins = db["admins"]
        self.tokens = tokens

    def create(self, email: str, password: str, **fields) -> Dict[str, Any]:
        doc = Admin(email=email.lower(), passwordHash=get_password_hash(password), **fields).model_dump()
        try:
            admin_id = create_document(self.db, "admins", doc)
        except DuplicateKeyError:
            raise ConflictError(f"Admin already exists: {email}")
        return serialize_doc(self.admins.find_one({"_id": parse_object_id(admin_id)}))

    def bootstrap(self, email: str, password: str) -> None:
        """Create the configured admin account if it does not exist yet."""
        if self.admins.find_one({"email": email.lower()}):
            return
        self.create(email, password)
        logger.info("Bootstrapped admin account %s", email)

    def login(self, email: str, password: str) -> Dict[str, Any]:
        doc = self.admins.find_one({"email": email.lower()})
        if not doc or not doc.get("isActive", True) or not verify_password(password, doc.get("passwordHash", "")):
            logger.warning("Failed admin login for %s", email)
            raise AuthenticationError(AuthFailure.INVALID_CREDENTIALS)
        self.admins.update_one({"_id": doc["_id"]}, {"$set": {"lastLoginAt": utcnow()}})
        admin = serialize_doc(doc)
        return {"token": self.tokens.issue_admin_token(admin), "admin": admin_profile(admin)}

    def verify(self, token: str) -> Dict[str, Any]:
        claims = self.tokens.decode(token, ADMIN_TOKEN)
        try:
            admin_oid = parse_object_id(claims["sub"], "Admin")
        except InvalidIdError:
            raise AuthenticationError(AuthFailure.TOKEN_INVALID)
        doc = self.admins.find_one({"_id": admin_oid})
        if not doc or not doc.get("isActive", True):
            raise AuthenticationError(AuthFailure.TOKEN_INVALID)
        admin = serialize_doc(doc)
        if admin.get("role") != "admin":
            raise PermissionDeniedError()
        return admin_profile(admin)
