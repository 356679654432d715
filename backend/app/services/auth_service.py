"""
Exposure Backend — Authentication Service
===========================================

What:  Admin login (password + optional TOTP), TOTP enrollment, admin user
       lifecycle and per-username login rate limiting.
Why:   Every credential decision lives here so the routes only translate
       outcomes into session state.
How:   Argon2id hashes through argon2-cffi, run in a worker thread so the
       event loop is not blocked for the duration of a hash. TOTP through
       pyotp with a ±1 step window and replay protection. QR codes through
       qrcode (Pillow backend).
Who:   Admin routes (login, TOTP setup/verify/disable) and the application
       lifespan (admin sync from ADMIN_USERS).

Failure reporting:
    Every rejected login raises AuthenticationError("Invalid credentials"),
    whatever the reason (unknown user, wrong password, missing/invalid/
    replayed code). Unknown users still pay for a hash verification so
    timing does not reveal which usernames exist.

TOTP parameters (RFC 6238 defaults, what authenticator apps expect):
    SHA1, 6 digits, 30 second steps. A code is accepted for steps
    {t-1, t, t+1}; once accepted, its step (and every earlier one) is
    burned by recording it in AdminUser.totp_last_step.
"""

import asyncio
import base64
import hmac
import io
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Mapping, Optional, Tuple

import pyotp
import qrcode
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from app.config import settings
from app.exceptions import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    RateLimitExceededError,
    ValidationError,
)
from app.models.admin_user import AdminUser

logger = logging.getLogger(__name__)

TOTP_WINDOW = 1


# ══════════════════════════════════════════════════════════════════════════
# TOTP Helpers (pure)
# ══════════════════════════════════════════════════════════════════════════


def current_time_step(interval: int = 30, now: Optional[float] = None) -> int:
    return int(time.time() if now is None else now) // interval


def match_totp_step(secret: str, code: str, now: Optional[float] = None) -> Optional[int]:
    """
    Return the time step `code` belongs to, or None.

    Each candidate is compared with hmac.compare_digest and all candidates
    are always checked.
    """
    if not code or len(code) != 6 or not code.isdigit():
        return None
    totp = pyotp.TOTP(secret)
    step = current_time_step(totp.interval, now)
    matched = None
    for offset in range(-TOTP_WINDOW, TOTP_WINDOW + 1):
        expected = totp.generate_otp(step + offset)
        if hmac.compare_digest(expected.encode(), code.encode()) and matched is None:
            matched = step + offset
    return matched


def verify_totp_code(secret: str, code: str, now: Optional[float] = None) -> bool:
    return match_totp_step(secret, code, now) is not None


def qr_code_png_base64(data: str) -> str:
    image = qrcode.make(data)
    buffer = io.BytesIO()
    image.save(buffer)
    return base64.b64encode(buffer.getvalue()).decode("ascii")


# ══════════════════════════════════════════════════════════════════════════
# Login Rate Limiter
# ══════════════════════════════════════════════════════════════════════════


@dataclass
class _Attempts:
    failures: Deque[float] = field(default_factory=deque)
    locked_until: float = 0.0


class LoginRateLimiter:
    """
    Per-username failed-login counter.

    `max_attempts` failures within `window_seconds` lock the username for
    `lockout_seconds`. Usernames are compared case-insensitively. State is
    in-process memory, like the ConcurrencyGuard.
    """

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        window_seconds: Optional[float] = None,
        lockout_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_attempts = max_attempts or settings.login_max_attempts
        self.window_seconds = window_seconds or settings.login_window_seconds
        self.lockout_seconds = lockout_seconds or settings.login_lockout_seconds
        self._clock = clock
        self._attempts: Dict[str, _Attempts] = {}

    @staticmethod
    def _key(username: str) -> str:
        return (username or "").strip().lower()

    def check(self, username: str) -> None:
        """
        Raises:
            RateLimitExceededError while the username is locked out
        """
        entry = self._attempts.get(self._key(username))
        if entry is None:
            return
        remaining = entry.locked_until - self._clock()
        if remaining > 0:
            raise RateLimitExceededError(retry_after=max(1, int(remaining + 0.999)))

    def record_failure(self, username: str) -> None:
        now = self._clock()
        entry = self._attempts.setdefault(self._key(username), _Attempts())
        while entry.failures and now - entry.failures[0] > self.window_seconds:
            entry.failures.popleft()
        entry.failures.append(now)
        if len(entry.failures) >= self.max_attempts:
            entry.locked_until = now + self.lockout_seconds
            entry.failures.clear()
            logger.warning(
                "Login locked for %ds after %d failures",
                self.lockout_seconds,
                self.max_attempts,
            )

    def clear(self, username: str) -> None:
        self._attempts.pop(self._key(username), None)


# ══════════════════════════════════════════════════════════════════════════
# Service
# ══════════════════════════════════════════════════════════════════════════


@dataclass
class TotpEnrollment:
    secret: str
    provisioning_uri: str
    qr_code_png: str


class AuthenticationService:
    """Credential checks and admin user management."""

    def __init__(
        self,
        hasher: Optional[PasswordHasher] = None,
        limiter: Optional[LoginRateLimiter] = None,
        issuer: Optional[str] = None,
    ):
        self.hasher = hasher or PasswordHasher()
        self.limiter = limiter or LoginRateLimiter()
        self.issuer = issuer or settings.totp_issuer
        self._dummy_hash: Optional[str] = None

    # ── Password Hashing ──────────────────────────────────────────────────

    async def hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self.hasher.hash, password)

    async def _verify_password(self, password_hash: str, password: str) -> bool:
        try:
            return await asyncio.to_thread(self.hasher.verify, password_hash, password)
        except (VerificationError, InvalidHashError):
            return False

    async def _burn_dummy_verification(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = await self.hash_password("exposure-dummy-password")
        await self._verify_password(self._dummy_hash, password)

    async def _get_user(self, db: AsyncSession, username: str) -> Optional[AdminUser]:
        result = await db.execute(select(AdminUser).where(AdminUser.username == username))
        return result.scalar_one_or_none()

    async def _require_user(self, db: AsyncSession, username: str) -> AdminUser:
        user = await self._get_user(db, username)
        if user is None:
            raise NotFoundError(resource="admin user", resource_id=username)
        return user

    # ── Login ─────────────────────────────────────────────────────────────

    @staticmethod
    async def _claim_step(db: AsyncSession, user: AdminUser, step: int) -> bool:
        """
        Record `step` as used unless it (or a later one) already is.

        The comparison runs inside the UPDATE, so of several logins racing
        with the same code exactly one sees rowcount 1.
        """
        result = await db.execute(
            update(AdminUser)
            .where(
                AdminUser.id == user.id,
                or_(AdminUser.totp_last_step.is_(None), AdminUser.totp_last_step < step),
            )
            .values(totp_last_step=step)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        set_committed_value(user, "totp_last_step", step)
        return True

    async def _check_credentials(
        self,
        db: AsyncSession,
        username: str,
        password: str,
        totp_code: Optional[str],
    ) -> AdminUser:
        user = await self._get_user(db, username)
        if user is None:
            await self._burn_dummy_verification(password)
            raise AuthenticationError()

        if not await self._verify_password(user.password_hash, password):
            raise AuthenticationError()

        if user.totp_enabled:
            step = match_totp_step(user.totp_secret or "", totp_code or "")
            if step is None:
                raise AuthenticationError()
            if not await self._claim_step(db, user, step):
                logger.warning("Rejected replayed TOTP code for an admin login")
                raise AuthenticationError()

        if self.hasher.check_needs_rehash(user.password_hash):
            user.password_hash = await self.hash_password(password)
            logger.info("Rehashed password for admin user %s", user.username)
        return user

    async def authenticate(
        self,
        db: AsyncSession,
        username: str,
        password: str,
        totp_code: Optional[str] = None,
    ) -> AdminUser:
        """
        Verify a login attempt.

        Raises:
            RateLimitExceededError: username is locked out
            AuthenticationError: any credential failure
        """
        self.limiter.check(username)
        try:
            user = await self._check_credentials(db, username, password, totp_code)
        except AuthenticationError:
            self.limiter.record_failure(username)
            await db.rollback()
            raise

        user.last_login_at = datetime.now(timezone.utc)
        await db.commit()
        self.limiter.clear(username)
        logger.info("Admin user %s logged in", user.username)
        return user

    # ── TOTP Enrollment ───────────────────────────────────────────────────

    async def enable_totp(self, db: AsyncSession, username: str) -> TotpEnrollment:
        """
        Start enrollment: store a fresh, unconfirmed secret.

        Raises:
            NotFoundError / ConflictError (already enabled)
        """
        user = await self._require_user(db, username)
        if user.totp_enabled:
            raise ConflictError(message="Two-factor authentication is already enabled")

        secret = pyotp.random_base32()
        user.totp_secret = secret
        user.totp_last_step = None
        await db.commit()

        uri = pyotp.TOTP(secret).provisioning_uri(name=user.username, issuer_name=self.issuer)
        logger.info("TOTP enrollment started for %s", user.username)
        return TotpEnrollment(
            secret=secret,
            provisioning_uri=uri,
            qr_code_png=qr_code_png_base64(uri),
        )

    async def verify_totp(self, db: AsyncSession, username: str, code: str) -> None:
        """
        Confirm enrollment with a code from the authenticator app.

        Raises:
            NotFoundError / ConflictError (already enabled) /
            ValidationError (no enrollment in progress, wrong code)
        """
        user = await self._require_user(db, username)
        if user.totp_enabled:
            raise ConflictError(message="Two-factor authentication is already enabled")
        if not user.totp_secret:
            raise ValidationError(
                message="Two-factor setup has not been started", field="code"
            )

        step = match_totp_step(user.totp_secret, code)
        if step is None:
            raise ValidationError(message="Invalid verification code", field="code")

        # Conditional on the secret still being the one the code matched:
        # a concurrent setup or verify makes this a no-op
        result = await db.execute(
            update(AdminUser)
            .where(
                AdminUser.id == user.id,
                AdminUser.totp_enabled.is_(False),
                AdminUser.totp_secret == user.totp_secret,
            )
            .values(totp_enabled=True, totp_last_step=step)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            raise ConflictError(message="Two-factor setup changed while verifying; start again")
        await db.commit()
        set_committed_value(user, "totp_enabled", True)
        set_committed_value(user, "totp_last_step", step)
        logger.info("TOTP enabled for %s", user.username)

    async def disable_totp(self, db: AsyncSession, username: str) -> None:
        user = await self._require_user(db, username)
        user.totp_secret = None
        user.totp_enabled = False
        user.totp_last_step = None
        await db.commit()
        logger.info("TOTP disabled for %s", user.username)

    # ── Admin Users ───────────────────────────────────────────────────────

    async def create_admin_user(
        self, db: AsyncSession, username: str, password: str
    ) -> AdminUser:
        """
        Raises:
            ConflictError: username already exists
        """
        if await self._get_user(db, username) is not None:
            raise ConflictError(message=f"Admin user '{username}' already exists")
        user = AdminUser(username=username, password_hash=await self.hash_password(password))
        db.add(user)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError(message=f"Admin user '{username}' already exists")
        logger.info("Created admin user %s", username)
        return user

    async def sync_admin_users(
        self, db: AsyncSession, credentials: Mapping[str, str]
    ) -> Tuple[int, int]:
        """
        Mirror configured credentials into the store.

        Creates missing users and rehashes passwords that no longer match.
        Users absent from the configuration are left alone.

        Returns:
            (created, updated)
        """
        created = updated = 0
        for username, password in credentials.items():
            user = await self._get_user(db, username)
            if user is None:
                db.add(
                    AdminUser(username=username, password_hash=await self.hash_password(password))
                )
                created += 1
            elif not await self._verify_password(user.password_hash, password):
                user.password_hash = await self.hash_password(password)
                updated += 1
        await db.commit()
        if created or updated:
            logger.info("Admin sync: %d created, %d updated", created, updated)
        return created, updated


# ── Singleton Instance ────────────────────────────────────────────────────
auth_service = AuthenticationService()
