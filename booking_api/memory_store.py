"""
In-process storage backend

Used by the test-suite and for local runs without PostgreSQL
(STORAGE_BACKEND=memory). State lives in dicts owned by one
MemoryRepository instance and is lost on restart.

Slot scopes are serialised with a keyed asyncio.Lock (one lock per
"space_id:date"), which is only correct inside a single process. Writes
made inside a scope are staged and applied in one step when the scope
exits cleanly, so a failed admission leaves nothing behind.
"""
import asyncio
import itertools
from contextlib import asynccontextmanager
from datetime import date, datetime, time
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

import structlog

from .exceptions import (
    DuplicateResourceError,
    ReservationHasPaymentsError,
    ReservationNotFoundError,
    SpaceNotFoundError,
    StorageUnavailableError,
)
from .models import (
    Installment, InstallmentDraft,
    Reservation,
    Space, SpaceCreate, SpaceUpdate,
    UserRecord, UserRole, UserUpdate,
)
from .repository import (
    SPACE_SORT_FIELDS,
    USER_SORT_FIELDS,
    BookingRepository,
    SlotTransaction,
    check_sort_field,
    slot_key,
)
from .utils import utcnow

logger = structlog.get_logger(__name__)


def _sorted(rows, sort_by: str, descending: bool) -> list:
    """Same order as ORDER BY sort_by, id (both in the requested direction)"""
    return sorted(rows, key=lambda row: (getattr(row, sort_by), row.id), reverse=descending)


class KeyedLock:
    """
    One asyncio.Lock per key, created on demand and dropped once nobody
    holds or waits for it.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refs: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str, timeout: Optional[float] = None) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._refs[key] = self._refs.get(key, 0) + 1

        try:
            try:
                async with asyncio.timeout(timeout):
                    await lock.acquire()
            except TimeoutError:
                logger.warning("slot_lock_timeout", key=key, timeout_seconds=timeout)
                raise StorageUnavailableError(f"Timed out waiting for slot lock {key}")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]


class MemorySlotTransaction(SlotTransaction):
    """Staged writes over a MemoryRepository, applied by commit()"""

    def __init__(self, store: "MemoryRepository"):
        self._store = store
        self._reservations: Dict[int, Reservation] = {}
        self._updated_ids: set = set()
        self._installments: Dict[int, List[Installment]] = {}

    def _current(self, reservation_id: int) -> Optional[Reservation]:
        if reservation_id in self._reservations:
            return self._reservations[reservation_id]
        return self._store._reservations.get(reservation_id)

    async def get_space(self, space_id: int) -> Optional[Space]:
        return self._store._spaces.get(space_id)

    async def get_reservation_for_update(self, reservation_id: int, user_id: int) -> Optional[Reservation]:
        reservation = self._current(reservation_id)
        if reservation is None or reservation.user_id != user_id:
            return None
        return reservation

    async def has_paid_installments(self, reservation_id: int) -> bool:
        return self._store._has_paid_installments(reservation_id)

    async def list_day_reservations(
        self,
        space_id: int,
        day: date,
        exclude_reservation_id: Optional[int] = None
    ) -> List[Reservation]:
        merged = {**self._store._reservations, **self._reservations}
        rows = [
            r for r in merged.values()
            if r.space_id == space_id and r.date == day and r.id != exclude_reservation_id
        ]
        return sorted(rows, key=lambda r: (r.start_time, r.id))

    async def insert_reservation(
        self,
        user_id: int,
        space_id: int,
        day: date,
        start_time: time,
        duration: int
    ) -> Reservation:
        now = utcnow()
        reservation = Reservation(
            id=self._store._next_id("reservations"),
            user_id=user_id,
            space_id=space_id,
            date=day,
            start_time=start_time,
            duration=duration,
            created_at=now,
            updated_at=now
        )
        self._reservations[reservation.id] = reservation
        return reservation

    async def update_reservation(
        self,
        reservation_id: int,
        space_id: int,
        day: date,
        start_time: time,
        duration: int
    ) -> Reservation:
        existing = self._current(reservation_id)
        if existing is None:
            raise ReservationNotFoundError(reservation_id)
        reservation = existing.model_copy(update={
            "space_id": space_id,
            "date": day,
            "start_time": start_time,
            "duration": duration,
            "updated_at": utcnow()
        })
        self._reservations[reservation_id] = reservation
        self._updated_ids.add(reservation_id)
        return reservation

    async def replace_installments(
        self,
        reservation_id: int,
        drafts: Sequence[InstallmentDraft]
    ) -> List[Installment]:
        now = utcnow()
        installments = [
            Installment(
                id=self._store._next_id("installments"),
                reservation_id=reservation_id,
                due_date=draft.due_date,
                amount=draft.amount,
                paid=False,
                paid_at=None,
                created_at=now
            )
            for draft in drafts
        ]
        self._installments[reservation_id] = installments
        return installments

    def commit(self) -> None:
        """Apply staged writes; runs without awaiting so it is atomic for the event loop"""
        store = self._store

        # checks first: nothing is applied if any of them fails
        for reservation in self._reservations.values():
            if reservation.space_id not in store._spaces:
                raise SpaceNotFoundError(reservation.space_id)
        for reservation_id in self._updated_ids:
            if reservation_id not in store._reservations:
                raise ReservationNotFoundError(reservation_id)
            # payments are not slot-locked, one may have landed since the check
            if store._has_paid_installments(reservation_id):
                raise ReservationHasPaymentsError(reservation_id)

        store._reservations.update(self._reservations)
        for reservation_id, installments in self._installments.items():
            store._drop_installments(reservation_id)
            for installment in installments:
                store._installments[installment.id] = installment


class MemoryRepository(BookingRepository):
    """Dict-backed repository for a single process"""

    name = "memory"

    def __init__(self, lock_timeout: Optional[float] = None):
        self.lock_timeout = lock_timeout
        self._users: Dict[int, UserRecord] = {}
        self._spaces: Dict[int, Space] = {}
        self._reservations: Dict[int, Reservation] = {}
        self._installments: Dict[int, Installment] = {}
        self._sequences = {
            "users": itertools.count(1),
            "spaces": itertools.count(1),
            "reservations": itertools.count(1),
            "installments": itertools.count(1),
        }
        self.slot_locks = KeyedLock()

    def _next_id(self, table: str) -> int:
        return next(self._sequences[table])

    def _has_paid_installments(self, reservation_id: int) -> bool:
        return any(i.paid for i in self._installments.values() if i.reservation_id == reservation_id)

    def _drop_installments(self, reservation_id: int) -> None:
        for installment_id in [i.id for i in self._installments.values() if i.reservation_id == reservation_id]:
            del self._installments[installment_id]

    def _drop_reservation(self, reservation_id: int) -> None:
        self._drop_installments(reservation_id)
        del self._reservations[reservation_id]

    async def ping(self) -> bool:
        return True

    def get_stats(self) -> dict:
        return {
            "backend": self.name,
            "spaces": len(self._spaces),
            "reservations": len(self._reservations),
            "active_slot_locks": len(self.slot_locks),
        }

    # ============================================================
    # Slot Scope
    # ============================================================

    @asynccontextmanager
    async def slot_scope(self, space_id: int, day: date) -> AsyncIterator[MemorySlotTransaction]:
        async with self.slot_locks.hold(slot_key(space_id, day), timeout=self.lock_timeout):
            tx = MemorySlotTransaction(self)
            yield tx
            tx.commit()

    # ============================================================
    # Users
    # ============================================================

    async def create_user(
        self,
        name: str,
        email: str,
        password_hash: str,
        role: UserRole = UserRole.USER
    ) -> UserRecord:
        email = email.lower()
        if any(u.email == email for u in self._users.values()):
            raise DuplicateResourceError("User", email, error_code="email_in_use")

        user = UserRecord(
            id=self._next_id("users"),
            name=name,
            email=email,
            role=role,
            password_hash=password_hash,
            created_at=utcnow()
        )
        self._users[user.id] = user
        return user

    async def get_user(self, user_id: int) -> Optional[UserRecord]:
        return self._users.get(user_id)

    async def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        email = email.lower()
        return next((u for u in self._users.values() if u.email == email), None)

    async def list_users(
        self,
        limit: int,
        offset: int,
        search: Optional[str] = None,
        sort_by: str = "id",
        descending: bool = False
    ) -> Tuple[List[UserRecord], int]:
        users = _sorted(self._users.values(), check_sort_field(sort_by, USER_SORT_FIELDS), descending)
        if search:
            needle = search.lower()
            users = [u for u in users if needle in u.name.lower() or needle in u.email]
        return users[offset:offset + limit], len(users)

    async def update_user(self, user_id: int, updates: UserUpdate) -> Optional[UserRecord]:
        existing = self._users.get(user_id)
        if existing is None:
            return None
        changes = updates.model_dump(exclude_unset=True, exclude_none=True)
        if not changes:
            return existing
        email = changes.get("email")
        if email and any(u.email == email and u.id != user_id for u in self._users.values()):
            raise DuplicateResourceError("User", email, error_code="email_in_use")

        updated = existing.model_copy(update={**changes, "updated_at": utcnow()})
        self._users[user_id] = updated
        return updated

    async def delete_user(self, user_id: int) -> bool:
        if user_id not in self._users:
            return False
        for reservation_id in [r.id for r in self._reservations.values() if r.user_id == user_id]:
            self._drop_reservation(reservation_id)
        del self._users[user_id]
        return True

    # ============================================================
    # Spaces
    # ============================================================

    async def list_spaces(
        self,
        limit: int,
        offset: int,
        search: Optional[str] = None,
        sort_by: str = "id",
        descending: bool = False
    ) -> Tuple[List[Space], int]:
        spaces = _sorted(self._spaces.values(), check_sort_field(sort_by, SPACE_SORT_FIELDS), descending)
        if search:
            needle = search.lower()
            spaces = [s for s in spaces if needle in s.name.lower()]
        return spaces[offset:offset + limit], len(spaces)

    async def get_space(self, space_id: int) -> Optional[Space]:
        return self._spaces.get(space_id)

    async def create_space(self, space: SpaceCreate) -> Space:
        now = utcnow()
        created = Space(id=self._next_id("spaces"), created_at=now, updated_at=now, **space.model_dump())
        self._spaces[created.id] = created
        return created

    async def update_space(self, space_id: int, updates: SpaceUpdate) -> Optional[Space]:
        existing = self._spaces.get(space_id)
        if existing is None:
            return None
        changes = updates.model_dump(exclude_unset=True)
        if not changes:
            return existing
        updated = existing.model_copy(update={**changes, "updated_at": utcnow()})
        self._spaces[space_id] = updated
        return updated

    async def delete_space(self, space_id: int) -> bool:
        if space_id not in self._spaces:
            return False
        for reservation_id in [r.id for r in self._reservations.values() if r.space_id == space_id]:
            self._drop_reservation(reservation_id)
        del self._spaces[space_id]
        return True

    # ============================================================
    # Reservations
    # ============================================================

    async def list_reservations(self, limit: int, offset: int) -> Tuple[List[Reservation], int]:
        rows = sorted(
            self._reservations.values(),
            key=lambda r: (r.date, r.start_time, r.id),
            reverse=True
        )
        return rows[offset:offset + limit], len(rows)

    async def list_user_reservations(self, user_id: int) -> List[Reservation]:
        rows = [r for r in self._reservations.values() if r.user_id == user_id]
        return sorted(rows, key=lambda r: (r.date, r.start_time, r.id), reverse=True)

    async def get_user_reservation(self, reservation_id: int, user_id: int) -> Optional[Reservation]:
        reservation = self._reservations.get(reservation_id)
        if reservation is None or reservation.user_id != user_id:
            return None
        return reservation

    async def delete_user_reservation(self, reservation_id: int, user_id: int) -> bool:
        if await self.get_user_reservation(reservation_id, user_id) is None:
            return False
        self._drop_reservation(reservation_id)
        return True

    # ============================================================
    # Installments
    # ============================================================

    async def list_installments(self, reservation_id: int, user_id: int) -> List[Installment]:
        if await self.get_user_reservation(reservation_id, user_id) is None:
            return []
        rows = [i for i in self._installments.values() if i.reservation_id == reservation_id]
        return sorted(rows, key=lambda i: (i.due_date, i.id))

    async def mark_installment_paid(
        self,
        installment_id: int,
        user_id: int,
        paid_at: datetime
    ) -> Tuple[Optional[Installment], bool]:
        installment = self._installments.get(installment_id)
        if installment is None:
            return None, False
        if await self.get_user_reservation(installment.reservation_id, user_id) is None:
            return None, False
        if installment.paid:
            return installment, False

        updated = installment.model_copy(update={"paid": True, "paid_at": paid_at, "updated_at": paid_at})
        self._installments[installment_id] = updated
        return updated, True
