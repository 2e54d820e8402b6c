import hashlib
import hmac
import logging
import secrets
from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from errors import AuthenticationError, NotFoundError
from models import Admin


logger = logging.getLogger(__name__)

HASH_SCHEME = "pbkdf2_sha256"
HASH_ITERATIONS = 260_000


def hash_password(password: str, *, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), salt.encode("utf-8"), HASH_ITERATIONS
    )
    return f"{HASH_SCHEME}${HASH_ITERATIONS}${salt}${digest.hex()}"


def is_hashed(stored: str) -> bool:
    return stored.startswith(f"{HASH_SCHEME}$")


def verify_password(password: str, stored: str) -> bool:
    if not is_hashed(stored):
        return hmac.compare_digest(password.encode("utf-8"), stored.encode("utf-8"))
    try:
        _, iterations, salt, expected = stored.split("$", 3)
        digest = hashlib.pbkdf2_hmac(
            "sha256", password.encode("utf-8"), salt.encode("utf-8"), int(iterations)
        )
    except ValueError:
        return False
    return hmac.compare_digest(digest.hex(), expected)


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.token_secret, salt="admin-token")


def issue_token(admin: Admin) -> str:
    return _serializer().dumps(
        {"id": admin.id, "username": admin.username, "role": admin.role}
    )


def read_token(token: str) -> Optional[dict]:
    settings = get_settings()
    try:
        data = _serializer().loads(token, max_age=settings.token_max_age_hours * 3600)
    except (SignatureExpired, BadSignature):
        return None
    if not isinstance(data, dict) or "id" not in data:
        return None
    return data


def admin_payload(admin: Admin) -> dict[str, object]:
    return {"id": admin.id, "username": admin.username, "role": admin.role}


class AuthService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def login(self, username: str, password: str) -> tuple[Admin, str]:
        admin = self.session.scalar(select(Admin).where(Admin.username == username))
        if not admin:
            raise AuthenticationError("Unknown username")
        if not verify_password(password, admin.password_hash):
            raise AuthenticationError("Wrong password")
        if not is_hashed(admin.password_hash):
            admin.password_hash = hash_password(password)
            self.session.commit()
            logger.info(f"auth: rehashed legacy password for admin_id={admin.id}")
        logger.info(f"auth: login admin_id={admin.id}")
        return admin, issue_token(admin)

    def verify(self, admin_id: int) -> Admin:
        admin = self.session.get(Admin, admin_id)
        if not admin:
            raise NotFoundError("User not found")
        return admin

    def create_admin(self, username: str, password: str, role: str = "admin") -> Admin:
        admin = Admin(username=username, password_hash=hash_password(password), role=role)
        self.session.add(admin)
        self.session.commit()
        self.session.refresh(admin)
        return admin


def ensure_bootstrap_admin(session: Session) -> Optional[Admin]:
    settings = get_settings()
    if not settings.admin_username or not settings.admin_password:
        return None
    existing = session.scalar(
        select(Admin).where(Admin.username == settings.admin_username)
    )
    if existing:
        return existing
    admin = AuthService(session).create_admin(
        settings.admin_username, settings.admin_password
    )
    logger.info(f"auth: bootstrap admin created username={admin.username}")
    return admin
