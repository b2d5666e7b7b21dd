"""
Authentication: bcrypt password hashes and JWT access tokens

Tokens carry user_id, email and role and expire after
ACCESS_TOKEN_EXPIRE_MINUTES (2 hours by default). They are verified
without a database round-trip.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
import structlog

from .exceptions import AuthenticationError
from .models import AuthenticatedUser, LoginResult, TokenData, User, UserCreate, UserLogin, UserRole
from .repository import BookingRepository

logger = structlog.get_logger(__name__)

# ============================================================
# JWT Token Functions
# ============================================================

def create_access_token(
    user_id: int,
    email: str,
    role: UserRole,
    secret_key: str,
    algorithm: str = "HS256",
    expires_minutes: int = 120
) -> str:
    """
    Create a JWT access token for a user

    Args:
        user_id: User id
        email: User email (informational claim)
        role: User role
        secret_key: Signing key
        algorithm: HS256/HS384/HS512
        expires_minutes: Token lifetime

    Returns:
        JWT token string
    """
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(minutes=expires_minutes)

    payload = {
        "sub": str(user_id),
        "user_id": user_id,
        "email": email,
        "role": role.value if hasattr(role, 'value') else role,
        "exp": int(expires_at.timestamp()),
        "iat": int(now.timestamp())
    }

    return jwt.encode(payload, secret_key, algorithm=algorithm)


def decode_access_token(token: str, secret_key: str, algorithm: str = "HS256") -> TokenData:
    """
    Decode and validate a JWT access token

    Raises:
        AuthenticationError: expired, tampered or malformed token
    """
    try:
        payload = jwt.decode(token, secret_key, algorithms=[algorithm])
        return TokenData(
            user_id=int(payload["user_id"]),
            email=payload["email"],
            role=UserRole(payload["role"]),
            exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
        )
    except jwt.ExpiredSignatureError:
        logger.warning("jwt_expired")
        raise AuthenticationError("Token expired", error_code="invalid_token")
    except jwt.InvalidTokenError as e:
        logger.warning("jwt_invalid", error=str(e))
        raise AuthenticationError("Invalid token", error_code="invalid_token")
    except (KeyError, ValueError) as e:
        logger.warning("jwt_claims_invalid", error=str(e))
        raise AuthenticationError("Invalid token claims", error_code="invalid_token")

# ============================================================
# Password Hashing
# ============================================================

def hash_password(password: str, rounds: int = 10) -> str:
    """
    Hash a password using bcrypt

    Returns:
        Bcrypt hash suitable for database storage
    """
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against a bcrypt hash"""
    try:
        hash_bytes = password_hash.encode('utf-8') if isinstance(password_hash, str) else password_hash
        return bcrypt.checkpw(password.encode('utf-8'), hash_bytes)
    except ValueError as e:
        logger.error("password_hash_invalid", error=str(e))
        return False

# ============================================================
# Registration & Login
# ============================================================

class AuthService:
    """Register users and exchange credentials for access tokens"""

    def __init__(
        self,
        repository: BookingRepository,
        secret_key: str,
        algorithm: str = "HS256",
        expires_minutes: int = 120,
        bcrypt_rounds: int = 10
    ):
        self.repository = repository
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.expires_minutes = expires_minutes
        self.bcrypt_rounds = bcrypt_rounds

    @classmethod
    def from_settings(cls, repository: BookingRepository, settings) -> "AuthService":
        return cls(
            repository,
            secret_key=settings.jwt_secret_key,
            algorithm=settings.jwt_algorithm,
            expires_minutes=settings.access_token_expire_minutes,
            bcrypt_rounds=settings.bcrypt_rounds
        )

    async def register(self, payload: UserCreate, role: UserRole = UserRole.USER) -> User:
        """Create an account; raises DuplicateResourceError(email_in_use)"""
        user = await self.repository.create_user(
            name=payload.name,
            email=payload.email,
            password_hash=hash_password(payload.password, self.bcrypt_rounds),
            role=role
        )
        logger.info("user_registered", user_id=user.id, role=user.role)
        return user.public()

    async def login(self, credentials: UserLogin) -> LoginResult:
        user = await self.repository.get_user_by_email(credentials.email)
        if user is None or not verify_password(credentials.password, user.password_hash):
            logger.warning("login_failed", email=credentials.email)
            raise AuthenticationError("Invalid email or password")

        token = create_access_token(
            user.id, user.email, UserRole(user.role),
            self.secret_key, self.algorithm, self.expires_minutes
        )
        logger.info("login_succeeded", user_id=user.id)
        return LoginResult(
            access_token=token,
            expires_in=self.expires_minutes * 60,
            user=user.public()
        )

    def authenticate(self, token: Optional[str]) -> AuthenticatedUser:
        """Resolve the identity behind a bearer token"""
        if not token:
            raise AuthenticationError("Authentication required", error_code="unauthorized")
        data = decode_access_token(token, self.secret_key, self.algorithm)
        return AuthenticatedUser(user_id=data.user_id, email=data.email, role=data.role)
