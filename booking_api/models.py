"""
Pydantic models for request/response validation
All models in one place for simplicity
"""
import re
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator

# Fixed-point amounts travel as JSON numbers, are Decimal everywhere else
Money = Annotated[
    Decimal,
    PlainSerializer(lambda v: float(v), return_type=float, when_used="json"),
]

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')

# ============================================================
# Enums
# ============================================================

class UserRole(str, Enum):
    """User roles for RBAC"""
    USER = "user"     # Books spaces, manages own reservations
    ADMIN = "admin"   # Manages spaces, sees every reservation

# ============================================================
# Base Models
# ============================================================

class TimestampMixin(BaseModel):
    """Mixin for timestamp fields"""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

# ============================================================
# User Models
# ============================================================

class UserBase(BaseModel):
    """Base user model"""
    name: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., max_length=255)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        """Basic email validation"""
        if not EMAIL_PATTERN.match(v):
            raise ValueError("Invalid email format")
        return v.lower()


class UserCreate(UserBase):
    """Registration payload (role is always 'user', admins come from scripts/create_admin_user.py)"""
    password: str = Field(..., min_length=6, max_length=100)


class UserAdminCreate(UserCreate):
    """Account created by an admin, who may pick the role"""
    role: UserRole = UserRole.USER


class UserUpdate(BaseModel):
    """Partial profile update; only admins may change the role"""
    model_config = ConfigDict(use_enum_values=True)

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    email: Optional[str] = Field(None, max_length=255)
    role: Optional[UserRole] = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        if v is not None and not EMAIL_PATTERN.match(v):
            raise ValueError("Invalid email format")
        return v.lower() if v else v


class UserLogin(BaseModel):
    """Login payload"""
    email: str = Field(..., max_length=255)
    password: str = Field(..., min_length=1, max_length=100)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower()


class User(UserBase, TimestampMixin):
    """Complete user model (without password)"""
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    id: int
    role: UserRole = UserRole.USER


class UserRecord(User):
    """Stored user including the bcrypt hash; never returned by the API"""
    password_hash: str

    def public(self) -> User:
        return User(**self.model_dump(exclude={"password_hash"}))


class TokenData(BaseModel):
    """Decoded JWT claims"""
    user_id: int
    email: str
    role: UserRole
    exp: datetime


class AuthenticatedUser(BaseModel):
    """Identity resolved from a bearer token"""
    user_id: int
    email: str
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class LoginResult(BaseModel):
    """Login response"""
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: User

# ============================================================
# Space Models
# ============================================================

class SpaceBase(BaseModel):
    """Base space model with common fields"""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    price_per_hour: Money = Field(..., ge=0, max_digits=10, decimal_places=2)


class SpaceCreate(SpaceBase):
    """Model for creating a space"""
    pass


class SpaceUpdate(BaseModel):
    """Model for updating a space (all fields optional)"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    price_per_hour: Optional[Money] = Field(None, ge=0, max_digits=10, decimal_places=2)


class Space(SpaceBase, TimestampMixin):
    """Complete space model with all fields"""
    model_config = ConfigDict(from_attributes=True)

    id: int

# ============================================================
# Reservation Models
# ============================================================

class ReservationRequest(BaseModel):
    """Create/update payload for a reservation"""
    space_id: int = Field(..., gt=0)
    date: date
    start_time: time = Field(..., description="24h wall-clock start, HH:MM")
    duration: int = Field(..., gt=0, le=24, description="Duration in whole hours")
    installment_count: Optional[int] = Field(
        None, ge=1, le=36,
        description="Split the total into N monthly installments (N > 1)"
    )

    @field_validator("start_time")
    @classmethod
    def validate_start_time(cls, v: time) -> time:
        """Minute granularity, no zone"""
        if v.second or v.microsecond:
            raise ValueError("start_time must have minute granularity (HH:MM)")
        return v.replace(tzinfo=None)


class Reservation(TimestampMixin):
    """Complete reservation model"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    space_id: int
    date: date
    start_time: time
    duration: int

# ============================================================
# Installment Models
# ============================================================

class InstallmentDraft(BaseModel):
    """One scheduled payment before it is persisted"""
    due_date: date
    amount: Money


class Installment(TimestampMixin):
    """Persisted installment"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    reservation_id: int
    due_date: date
    amount: Money
    paid: bool = False
    paid_at: Optional[datetime] = None

# ============================================================
# Admission Result
# ============================================================

class CalculationDetails(BaseModel):
    """Everything needed to reconstruct a price without recomputing it"""
    base_rate: Money
    duration_hours: int
    date: date
    weekend: bool
    factor: Money
    exchange_rate: Money
    primary_currency: str
    secondary_currency: str


class ReservationResult(BaseModel):
    """Outcome of an admitted create or update"""
    reservation_id: int
    total_primary: Money
    total_secondary: Money
    installments: Optional[List[Installment]] = None
    calculation_details: CalculationDetails

# ============================================================
# Response Models
# ============================================================

class HealthStatus(BaseModel):
    """Health check response"""
    status: str = Field(..., description="healthy, degraded, or unhealthy")
    version: str
    timestamp: datetime
    checks: Dict[str, str]
    stats: Optional[Dict[str, Any]] = None

# ============================================================
# Query Parameters
# ============================================================

class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class PaginationParams(BaseModel):
    """Common pagination parameters"""
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)
    search: Optional[str] = None
    sort_by: Optional[str] = None
    sort_dir: SortDirection = SortDirection.ASC

    @property
    def descending(self) -> bool:
        return self.sort_dir == SortDirection.DESC

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit
