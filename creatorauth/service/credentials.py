from __future__ import annotations

import re
from datetime import datetime
from typing import Callable, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from creatorauth.logging import get_logger
from creatorauth.service.errors import ConflictError, NotFoundError, ValidationError
from creatorauth.service.policy import FailurePolicy, failure_policy
from creatorauth.storage.base import CredentialStore
from creatorauth.storage.errors import ConstraintViolation, RecordNotFound
from creatorauth.storage.models import UserProfile, from_row, new_id, to_row, utcnow

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8
ROLES = frozenset({"user", "admin"})


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class CredentialService:
    """User profiles and argon2id password verification."""

    def __init__(
        self,
        store: CredentialStore,
        *,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self._now = now or utcnow
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the account does not exist so both failure
        # paths spend the same argon2 work
        self._dummy_hash = self._pwd_hasher.hash(new_id())

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _check_password(self, stored_hash: Optional[str], password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash or self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    @staticmethod
    def validate_password(password: str) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )

    @failure_policy(FailurePolicy.CLOSED, reason="account creation is a primary state transition")
    async def register(self, email: str, password: str, *, role: str = "user") -> UserProfile:
        email = normalize_email(email)
        if not _EMAIL_RE.match(email):
            raise ValidationError("invalid email address", detail={"field": "email"})
        if role not in ROLES:
            raise ValidationError("invalid role", detail={"field": "role"})
        self.validate_password(password)
        now = self._now()
        profile = UserProfile(
            id=new_id(),
            email=email,
            role=role,
            password_hash=self.hash_password(password),
            created_at=now,
            updated_at=now,
        )
        try:
            await self.store.insert("user_profiles", to_row(profile))
        except ConstraintViolation as exc:
            raise ConflictError("email already registered") from exc
        logger.info("user_registered", user_id=profile.id, role=role)
        return profile

    @failure_policy(FailurePolicy.CLOSED, reason="credential checks never default to allow")
    async def verify(self, email: str, password: str) -> Optional[UserProfile]:
        """Return the profile when the credentials match, otherwise ``None``.

        Unknown emails, disabled accounts and wrong passwords are
        indistinguishable to the caller.
        """
        profile = await self.get_by_email(email)
        matched = self._check_password(profile.password_hash if profile else None, password)
        if not profile or not matched or not profile.is_active:
            return None
        if self._pwd_hasher.check_needs_rehash(profile.password_hash):
            await self.store.update(
                "user_profiles",
                {"id": profile.id},
                {"password_hash": self.hash_password(password), "updated_at": self._now()},
            )
        return profile

    async def get_by_email(self, email: str) -> Optional[UserProfile]:
        rows = await self.store.select(
            "user_profiles", {"email": normalize_email(email)}, limit=1
        )
        return from_row(UserProfile, rows[0]) if rows else None

    async def get_by_id(self, user_id: str) -> Optional[UserProfile]:
        rows = await self.store.select("user_profiles", {"id": user_id}, limit=1)
        return from_row(UserProfile, rows[0]) if rows else None

    async def set_password(self, user_id: str, new_password: str) -> None:
        self.validate_password(new_password)
        try:
            await self.store.update(
                "user_profiles",
                {"id": user_id},
                {"password_hash": self.hash_password(new_password), "updated_at": self._now()},
            )
        except RecordNotFound as exc:
            raise NotFoundError("user not found") from exc

    async def set_role(self, user_id: str, role: str) -> UserProfile:
        if role not in ROLES:
            raise ValidationError("invalid role", detail={"field": "role"})
        try:
            rows = await self.store.update(
                "user_profiles", {"id": user_id}, {"role": role, "updated_at": self._now()}
            )
        except RecordNotFound as exc:
            raise NotFoundError("user not found") from exc
        logger.info("user_role_changed", user_id=user_id, role=role)
        return from_row(UserProfile, rows[0])
