"""
Identity provider: JWT session tokens and email OTP login.

Tokens are read from ``Authorization: Bearer`` first, then from the
``auth-token`` cookie. A token only resolves to an identity while its user
still exists and is verified.
"""

import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

import jwt
import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.hash import bcrypt

import config
from database import utcnow
from errors import (
    AuthenticationError,
    ConflictError,
    FixMyAreaError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitedError,
    ValidationError,
)
from schemas import Identity, SendOtpRequest, User, VerifyOtpRequest

log = structlog.get_logger(__name__)

security = HTTPBearer(auto_error=False)


# ------------------ Tokens ------------------

def create_token(user: User, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    payload = {
        "userId": user.id,
        "email": user.email,
        "role": user.role,
        "iat": now,
        "exp": now + timedelta(days=config.JWT_EXPIRE_DAYS),
        "iss": config.JWT_ISSUER,
        "aud": config.JWT_AUDIENCE,
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(
            token,
            config.JWT_SECRET,
            algorithms=[config.JWT_ALGORITHM],
            audience=config.JWT_AUDIENCE,
            issuer=config.JWT_ISSUER,
        )
    except jwt.PyJWTError as exc:
        raise AuthenticationError("Invalid or expired token") from exc


# ------------------ OTP ------------------

def generate_otp() -> str:
    return str(100000 + secrets.randbelow(900000))


def hash_otp(otp: str) -> str:
    return bcrypt.using(rounds=10).hash(otp)


def check_otp(otp: str, otp_hash: str) -> bool:
    try:
        return bcrypt.verify(otp, otp_hash)
    except ValueError:
        return False


# ------------------ Dependencies ------------------

async def current_identity(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[Identity]:
    token = credentials.credentials if credentials else request.cookies.get(config.AUTH_COOKIE_NAME)
    if not token:
        return None
    try:
        payload = decode_token(token)
    except AuthenticationError:
        log.info("token_rejected", path=request.url.path)
        return None
    user = await request.app.state.services.users.get(str(payload.get("userId", "")))
    if user is None or not user.isVerified:
        return None
    return Identity(id=user.id, role=user.role, email=user.email, name=user.name)


async def require_auth(identity: Optional[Identity] = Depends(current_identity)) -> Identity:
    if identity is None:
        raise AuthenticationError()
    return identity


async def require_admin(identity: Identity = Depends(require_auth)) -> Identity:
    if not identity.is_admin:
        raise PermissionDeniedError("Admin access required")
    return identity


# ------------------ Login flow ------------------

class AuthService:
    def __init__(self, users, notifier, limiter, clock: Callable[[], datetime] = utcnow):
        self.users = users
        self.notifier = notifier
        self.limiter = limiter
        self.clock = clock

    async def send_otp(self, req: SendOtpRequest) -> Dict[str, Any]:
        email = req.email.lower()
        name = (req.name or "").strip()
        if req.isSignup and not 2 <= len(name) <= 50:
            raise ValidationError("Name is required for signup and must be 2 to 50 characters")
        if not self.limiter.hit(email):
            log.warning("otp_rate_limited", email=email)
            raise RateLimitedError("Too many OTP requests. Please try again in 15 minutes.")

        user = await self.users.find_by_email(email)
        if req.isSignup:
            if user is not None and user.isVerified:
                raise ConflictError("User with this email already exists")
            if user is None:
                user = await self.users.create(email, name)
        else:
            if user is None:
                raise NotFoundError("User", message="No account found with this email address")
            if not user.isVerified:
                raise PermissionDeniedError("Account not verified. Please complete signup first.")

        otp = generate_otp()
        expires = self.clock() + timedelta(minutes=config.OTP_EXPIRE_MINUTES)
        await self.users.set_otp(user.id, hash_otp(otp), expires)
        if not await self.notifier.send_otp(email, otp, user.name):
            raise FixMyAreaError("Failed to send OTP email. Please try again.")
        log.info("otp_sent", email=email, signup=req.isSignup)
        return {"email": email, "expiresIn": config.OTP_EXPIRE_MINUTES * 60 * 1000}

    async def verify_otp(self, req: VerifyOtpRequest) -> Tuple[User, str, bool]:
        """Check the OTP and return the verified user, a session token and whether this was a signup."""
        user = await self.users.find_by_email(req.email)
        if user is None:
            raise ValidationError("Invalid email or OTP")
        stored = await self.users.get_otp(user.id)
        if stored is None:
            raise ValidationError("No OTP found. Please request a new one.")
        otp_hash, expires = stored
        if expires < self.clock():
            await self.users.clear_otp(user.id)
            raise ValidationError("OTP has expired. Please request a new one.")
        if not check_otp(req.otp, otp_hash):
            log.info("otp_mismatch", user_id=user.id)
            raise ValidationError("Invalid OTP")

        created = not user.isVerified
        user = await self.users.mark_verified(user.id, req.name if created else None)
        if created:
            try:
                await self.notifier.send_welcome(user.email, user.name)
            except Exception as exc:
                log.error("welcome_email_failed", user_id=user.id, error=str(exc))
        log.info("otp_verified", user_id=user.id, signup=created)
        return user, create_token(user, self.clock()), created
