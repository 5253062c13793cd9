import base64
import binascii
import hmac
import json
from typing import Any

from fastapi import Header, Request

from backend.errors import AuthenticationError
from backend.models import Caller, Role

PRINCIPAL_HEADER = "X-Client-Principal"
INTERNAL_KEY_HEADER = "X-Internal-Key"


def _b64_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    value = value.strip() + padding
    if "-" in value or "_" in value:
        return base64.urlsafe_b64decode(value)
    return base64.b64decode(value)


def encode_principal(user_id: str, email: str | None = None, roles: list[str] | None = None) -> str:
    """Build a principal header value; used by tests and local tooling."""
    payload = {"userId": user_id, "userDetails": email, "userRoles": roles or []}
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def decode_principal(value: str) -> dict[str, Any] | None:
    if not value:
        return None
    try:
        payload = json.loads(_b64_decode(value).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None

    if not isinstance(payload, dict):
        return None
    user_id = payload.get("userId")
    if not isinstance(user_id, str) or not user_id.strip():
        return None
    roles = payload.get("userRoles") or []
    if not isinstance(roles, list):
        return None
    return {
        "userId": user_id.strip(),
        "userDetails": payload.get("userDetails") if isinstance(payload.get("userDetails"), str) else None,
        "userRoles": [str(r).strip().lower() for r in roles],
    }


class RoleResolver:
    """Maps a verified principal to a role: explicit roles first, then email domain."""

    def __init__(self, teacher_domains: list[str] | None = None, student_domains: list[str] | None = None):
        self.teacher_domains = {d.lower().lstrip("@") for d in teacher_domains or []}
        self.student_domains = {d.lower().lstrip("@") for d in student_domains or []}

    def resolve_role(self, principal: dict[str, Any]) -> Role | None:
        roles = principal.get("userRoles") or []
        if Role.TEACHER.value in roles:
            return Role.TEACHER
        if Role.STUDENT.value in roles:
            return Role.STUDENT

        email = (principal.get("userDetails") or "").lower()
        _, _, domain = email.rpartition("@")
        if domain and domain in self.teacher_domains:
            return Role.TEACHER
        if domain and domain in self.student_domains:
            return Role.STUDENT
        return None


def require_caller(
    request: Request,
    x_client_principal: str | None = Header(default=None),
) -> Caller:
    if not x_client_principal:
        raise AuthenticationError("Missing client principal.")

    principal = decode_principal(x_client_principal)
    if not principal:
        raise AuthenticationError("Invalid client principal.")

    resolver: RoleResolver = request.app.state.role_resolver
    role = resolver.resolve_role(principal)
    if role is None:
        raise AuthenticationError("No role could be resolved for this user.")

    return Caller(user_id=principal["userId"], role=role, email=principal["userDetails"])


def require_internal_key(
    request: Request,
    x_internal_key: str | None = Header(default=None),
) -> None:
    """Gate for scheduler hooks; closed when no key is configured."""
    expected = request.app.state.config.internal_api_key
    if not expected:
        raise AuthenticationError("Internal endpoints are disabled.")
    if not x_internal_key or not hmac.compare_digest(x_internal_key.encode(), expected.encode()):
        raise AuthenticationError("Invalid internal key.")
