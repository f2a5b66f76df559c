from __future__ import annotations

import hashlib
import hmac
import inspect
from dataclasses import dataclass
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Optional, Tuple, TypeVar, cast

from flask import current_app, g, request, session

from extensions import db
from models import Parent, ParentStudent, Profile, Student
from utils.cache import ProfileCache
from utils.errors import AuthenticationError, AuthorizationError, NotFoundError, ValidationError
from utils.roles import Capability, Role, has_capability

F = TypeVar("F", bound=Callable[..., Any])


@dataclass(frozen=True)
class ProfileInfo:
    """Detached copy of the profile fields request gating needs."""

    id: str
    role: str
    school_id: Optional[str]
    email: Optional[str]
    is_active: bool

    @property
    def role_enum(self) -> Optional[Role]:
        return Role.parse(self.role)


# -----------------------------
# Signed bearer tokens
# -----------------------------


def _mac(profile_id: str, ts: str) -> str:
    secret = (current_app.config.get("SECRET_KEY") or "").encode("utf-8")
    return hmac.new(secret, f"profile:{profile_id}:{ts}".encode("utf-8"), hashlib.sha256).hexdigest()[:24]


def sign_token(profile_id: str, issued_at: int | None = None) -> str:
    ts = str(int(issued_at or int(datetime.now().timestamp())))
    return f"{profile_id}.{ts}.{_mac(profile_id, ts)}"


def verify_token(token: str) -> str | None:
    try:
        profile_id, ts, mac = token.split(".")
        issued = int(ts)
    except ValueError:
        return None
    if not hmac.compare_digest(mac, _mac(profile_id, ts)):
        return None
    max_age = int(current_app.config.get("AUTH_TOKEN_MAX_AGE") or 0)
    if max_age and int(datetime.now().timestamp()) - issued > max_age:
        return None
    return profile_id


# -----------------------------
# Profile lookup
# -----------------------------


def profile_cache() -> ProfileCache:
    return current_app.extensions["profile_cache"]


def load_profile(profile_id: str) -> Optional[ProfileInfo]:
    def _load():
        row = db.session.get(Profile, profile_id)
        if row is None:
            return None
        return ProfileInfo(
            id=row.id,
            role=row.role,
            school_id=row.school_id,
            email=row.email,
            is_active=bool(row.is_active),
        )

    return profile_cache().get_or_load(profile_id, _load)


def _bearer_token() -> Optional[str]:
    header = request.headers.get("Authorization") or ""
    if header.lower().startswith("bearer "):
        return header.split(" ", 1)[1].strip() or None
    return None


def current_profile() -> ProfileInfo:
    if getattr(g, "profile", None) is not None:
        return g.profile
    token = _bearer_token()
    if token:
        profile_id = verify_token(token)
        if not profile_id:
            raise AuthenticationError("Invalid or expired token")
    else:
        profile_id = session.get("profile_id")
        if not profile_id:
            raise AuthenticationError("Authentication required")
    profile = load_profile(profile_id)
    if profile is None or not profile.is_active:
        raise AuthenticationError("Profile not found or inactive")
    g.profile = profile
    return profile


def requires(*capabilities: Capability) -> Callable[[F], F]:
    """Authenticate the caller and check every listed capability."""

    def check() -> None:
        profile = current_profile()
        role = profile.role_enum
        for cap in capabilities:
            if not has_capability(role, cap):
                raise AuthorizationError("You do not have permission to perform this action")

    def decorator(func: F) -> F:
        if inspect.iscoroutinefunction(func):

            @wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any):
                check()
                return await func(*args, **kwargs)

            return cast(F, async_wrapper)

        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any):
            check()
            return func(*args, **kwargs)

        return cast(F, wrapper)

    return decorator


# -----------------------------
# Ownership
# -----------------------------


def parent_for(profile: ProfileInfo) -> Parent:
    parent = Parent.query.filter_by(profile_id=profile.id).first()
    if parent is None:
        raise NotFoundError("Parent record not found")
    return parent


def ensure_parent_owns_student(profile: ProfileInfo, student_id: Optional[str]) -> Tuple[Parent, Student]:
    if not student_id:
        raise ValidationError("studentId is required")
    parent = parent_for(profile)
    link = ParentStudent.query.filter_by(parent_id=parent.id, student_id=student_id).first()
    if link is None:
        raise AuthorizationError("Student is not linked to this parent")
    student = db.session.get(Student, student_id)
    if student is None:
        raise NotFoundError("Student not found")
    return parent, student


def school_scope(profile: ProfileInfo) -> str:
    if not profile.school_id:
        raise AuthorizationError("No school is associated with this profile")
    return profile.school_id
