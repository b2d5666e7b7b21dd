"""
Storage interface for the booking engine

Two backends implement it:
- PostgresRepository (database.py): asyncpg, advisory transaction locks
- MemoryRepository (memory_store.py): in-process, keyed asyncio locks

Everything that decides whether a reservation may be admitted runs inside
a slot scope: a transaction that holds the exclusive lock for one
(space, date) pair from the availability read until commit. Two admissions
for the same key never interleave; admissions for different keys run in
parallel. Leaving the scope with an exception rolls everything back.
"""
from abc import ABC, abstractmethod
from datetime import date, datetime, time
from typing import AsyncContextManager, List, Optional, Sequence, Tuple

from .models import (
    Installment, InstallmentDraft,
    Reservation,
    Space, SpaceCreate, SpaceUpdate,
    UserRecord, UserRole, UserUpdate,
)

# Columns a listing may be sorted by; id breaks ties
SPACE_SORT_FIELDS = ("id", "name", "price_per_hour", "created_at")
USER_SORT_FIELDS = ("id", "name", "email", "created_at")


def check_sort_field(sort_by: str, allowed: Sequence[str]) -> str:
    if sort_by not in allowed:
        raise ValueError(f"Cannot sort by {sort_by!r}, expected one of {list(allowed)}")
    return sort_by


def slot_key(space_id: int, day: date) -> str:
    """Lock key for one space on one calendar date"""
    return f"{space_id}:{day.isoformat()}"


class SlotTransaction(ABC):
    """Operations available while the (space, date) lock is held"""

    @abstractmethod
    async def get_space(self, space_id: int) -> Optional[Space]:
        ...

    @abstractmethod
    async def get_reservation_for_update(self, reservation_id: int, user_id: int) -> Optional[Reservation]:
        """Reservation owned by user_id, locked against concurrent updates"""

    @abstractmethod
    async def has_paid_installments(self, reservation_id: int) -> bool:
        """True if any installment of the reservation is paid; locks the schedule until commit"""

    @abstractmethod
    async def list_day_reservations(
        self,
        space_id: int,
        day: date,
        exclude_reservation_id: Optional[int] = None
    ) -> List[Reservation]:
        """Reservations of the locked (space, date), oldest first"""

    @abstractmethod
    async def insert_reservation(
        self,
        user_id: int,
        space_id: int,
        day: date,
        start_time: time,
        duration: int
    ) -> Reservation:
        ...

    @abstractmethod
    async def update_reservation(
        self,
        reservation_id: int,
        space_id: int,
        day: date,
        start_time: time,
        duration: int
    ) -> Reservation:
        ...

    @abstractmethod
    async def replace_installments(
        self,
        reservation_id: int,
        drafts: Sequence[InstallmentDraft]
    ) -> List[Installment]:
        """Delete the reservation's installments and insert drafts (may be empty)"""


class BookingRepository(ABC):
    """Persistence for users, spaces, reservations and installments"""

    name = "abstract"

    async def initialize(self) -> None:
        """Open connections / create schema"""

    async def close(self) -> None:
        """Release resources"""

    @abstractmethod
    async def ping(self) -> bool:
        ...

    def get_stats(self) -> dict:
        return {"backend": self.name}

    # ============================================================
    # Slot Scope
    # ============================================================

    @abstractmethod
    def slot_scope(self, space_id: int, day: date) -> AsyncContextManager[SlotTransaction]:
        """Enter a transaction holding the exclusive lock for (space_id, day)"""

    # ============================================================
    # Users
    # ============================================================

    @abstractmethod
    async def create_user(
        self,
        name: str,
        email: str,
        password_hash: str,
        role: UserRole = UserRole.USER
    ) -> UserRecord:
        """Raises DuplicateResourceError(email_in_use) when the email is taken"""

    @abstractmethod
    async def get_user(self, user_id: int) -> Optional[UserRecord]:
        ...

    @abstractmethod
    async def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        ...

    @abstractmethod
    async def list_users(
        self,
        limit: int,
        offset: int,
        search: Optional[str] = None,
        sort_by: str = "id",
        descending: bool = False
    ) -> Tuple[List[UserRecord], int]:
        """One page of users (search matches name or email), plus the total count"""

    @abstractmethod
    async def update_user(self, user_id: int, updates: UserUpdate) -> Optional[UserRecord]:
        """Apply the fields present in updates; raises DuplicateResourceError(email_in_use)"""

    @abstractmethod
    async def delete_user(self, user_id: int) -> bool:
        """Delete a user with their reservations and installments"""

    # ============================================================
    # Spaces
    # ============================================================

    @abstractmethod
    async def list_spaces(
        self,
        limit: int,
        offset: int,
        search: Optional[str] = None,
        sort_by: str = "id",
        descending: bool = False
    ) -> Tuple[List[Space], int]:
        """One page of spaces (search matches name), plus the total count"""

    @abstractmethod
    async def get_space(self, space_id: int) -> Optional[Space]:
        ...

    @abstractmethod
    async def create_space(self, space: SpaceCreate) -> Space:
        ...

    @abstractmethod
    async def update_space(self, space_id: int, updates: SpaceUpdate) -> Optional[Space]:
        ...

    @abstractmethod
    async def delete_space(self, space_id: int) -> bool:
        """Delete a space with its reservations and their installments"""

    # ============================================================
    # Reservations
    # ============================================================

    @abstractmethod
    async def list_reservations(self, limit: int, offset: int) -> Tuple[List[Reservation], int]:
        """Every reservation, newest date first, plus the total count"""

    @abstractmethod
    async def list_user_reservations(self, user_id: int) -> List[Reservation]:
        """Reservations owned by user_id ordered by date desc, start time desc"""

    @abstractmethod
    async def get_user_reservation(self, reservation_id: int, user_id: int) -> Optional[Reservation]:
        ...

    @abstractmethod
    async def delete_user_reservation(self, reservation_id: int, user_id: int) -> bool:
        """Delete an owned reservation and its installments"""

    # ============================================================
    # Installments
    # ============================================================

    @abstractmethod
    async def list_installments(self, reservation_id: int, user_id: int) -> List[Installment]:
        """Installments of an owned reservation by due date then id (empty if not owned)"""

    @abstractmethod
    async def mark_installment_paid(
        self,
        installment_id: int,
        user_id: int,
        paid_at: datetime
    ) -> Tuple[Optional[Installment], bool]:
        """
        Set paid/paid_at on an owned installment.

        Returns (installment, changed). installment is None when it does not
        exist or belongs to someone else; changed is False when it was
        already paid (paid_at untouched).
        """
