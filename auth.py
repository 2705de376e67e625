from dataclasses import dataclass
from enum import Enum
from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings
from errors import AuthenticationError, PermissionDeniedError


class Role(str, Enum):
    admin = "admin"
    editor = "editor"
    viewer = "viewer"


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: Role = Role.editor

    @property
    def is_admin(self) -> bool:
        return self.role == Role.admin

    @property
    def can_write(self) -> bool:
        return self.role in (Role.admin, Role.editor)


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.auth_secret, salt="identity-token")


def issue_token(user_id: str, role: Role = Role.editor) -> str:
    return _serializer().dumps({"u": user_id, "r": Role(role).value})


def identity_from_token(token: str, max_age_hours: Optional[int] = None) -> Identity:
    if not token:
        raise AuthenticationError("Missing identity token")
    max_age = max_age_hours or get_settings().token_max_age_hours
    try:
        data = _serializer().loads(token, max_age=max_age * 3600)
    except SignatureExpired as exc:
        raise AuthenticationError("Identity token expired") from exc
    except BadSignature as exc:
        raise AuthenticationError("Invalid identity token") from exc

    user_id = data.get("u")
    try:
        role = Role(data.get("r"))
    except ValueError as exc:
        raise AuthenticationError("Invalid identity role") from exc
    if not user_id:
        raise AuthenticationError("Invalid identity token")
    return Identity(user_id=str(user_id), role=role)


def require_admin(identity: Identity) -> None:
    if not identity.is_admin:
        raise PermissionDeniedError("Administrator role required")


def require_writer(identity: Identity) -> None:
    if not identity.can_write:
        raise PermissionDeniedError("Write access required")
