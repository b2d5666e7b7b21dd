"""
PostgreSQL storage backend
Connection pool, schema and every query the API runs.

Slot scopes take a transaction-level advisory lock keyed by
hashtext('space_id:date') before reading the day's reservations, so two
admissions for the same space and date are serialised by the database.
The gist exclusion constraint on (space_id, slot) backs the no-overlap
rule at the storage level; if it ever fires it is reported as an
overlapped reservation.
"""
from contextlib import asynccontextmanager
from datetime import date, datetime, time
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import asyncpg
import structlog

from .exceptions import (
    BookingException,
    DatabaseError,
    DuplicateResourceError,
    OverlappedReservationError,
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

logger = structlog.get_logger(__name__)

# ============================================================
# Schema
# ============================================================

SCHEMA_SQL = """
CREATE EXTENSION IF NOT EXISTS btree_gist;

CREATE TABLE IF NOT EXISTS users (
    id SERIAL PRIMARY KEY,
    name VARCHAR(255) NOT NULL,
    email VARCHAR(255) NOT NULL UNIQUE,
    password_hash VARCHAR(255) NOT NULL,
    role VARCHAR(16) NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS spaces (
    id SERIAL PRIMARY KEY,
    name VARCHAR(255) NOT NULL,
    description TEXT,
    price_per_hour NUMERIC(10, 2) NOT NULL CHECK (price_per_hour >= 0),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS reservations (
    id SERIAL PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    space_id INTEGER NOT NULL REFERENCES spaces(id) ON DELETE CASCADE,
    date DATE NOT NULL,
    start_time TIME NOT NULL,
    duration INTEGER NOT NULL CHECK (duration > 0),
    slot TSRANGE GENERATED ALWAYS AS (
        tsrange(date + start_time, date + start_time + duration * INTERVAL '1 hour', '[)')
    ) STORED,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ,
    CONSTRAINT reservations_no_overlap EXCLUDE USING gist (space_id WITH =, slot WITH &&)
);

CREATE INDEX IF NOT EXISTS idx_reservations_space_date ON reservations (space_id, date);
CREATE INDEX IF NOT EXISTS idx_reservations_user ON reservations (user_id, date DESC, start_time DESC);

CREATE TABLE IF NOT EXISTS installments (
    id SERIAL PRIMARY KEY,
    reservation_id INTEGER NOT NULL REFERENCES reservations(id) ON DELETE CASCADE,
    due_date DATE NOT NULL,
    amount NUMERIC(12, 2) NOT NULL,
    paid BOOLEAN NOT NULL DEFAULT FALSE,
    paid_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_installments_reservation ON installments (reservation_id, due_date);
"""

RESERVATION_COLUMNS = "id, user_id, space_id, date, start_time, duration, created_at, updated_at"
INSTALLMENT_COLUMNS = "id, reservation_id, due_date, amount, paid, paid_at, created_at, updated_at"

# lock_timeout / statement_timeout / deadlock / serialization: the caller may retry
RETRYABLE_ERRORS = (
    asyncpg.exceptions.LockNotAvailableError,
    asyncpg.exceptions.QueryCanceledError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.SerializationError,
)


def order_clause(column: str, descending: bool = False) -> str:
    """ORDER BY for a whitelisted column, id as tie-breaker"""
    direction = "DESC" if descending else "ASC"
    return f"ORDER BY {column} {direction}, id {direction}"


def translate_error(
    error: Exception,
    space_id: Optional[int] = None,
    day: Optional[date] = None
) -> BookingException:
    """Map an asyncpg error to the nearest domain exception"""
    if isinstance(error, RETRYABLE_ERRORS):
        logger.warning("storage_retryable_error", error_type=type(error).__name__, error=str(error))
        return StorageUnavailableError()

    if isinstance(error, asyncpg.exceptions.ExclusionViolationError):
        return OverlappedReservationError(space_id, day)

    if isinstance(error, asyncpg.exceptions.ForeignKeyViolationError):
        if "space" in (getattr(error, "constraint_name", None) or str(error)):
            return SpaceNotFoundError(space_id)
        return DatabaseError(f"Foreign key violation: {error}")

    if isinstance(error, asyncpg.exceptions.UniqueViolationError):
        return DatabaseError(f"Unique constraint violation: {error}")

    logger.error("storage_error", error_type=type(error).__name__, error=str(error))
    return DatabaseError(f"Database error: {error}")


class DatabasePool:
    """
    Async PostgreSQL connection pool
    Simplified but production-ready
    """

    def __init__(
        self,
        dsn: str,
        min_size: int = 2,
        max_size: int = 10,
        lock_timeout_ms: int = 5000,
        statement_timeout_ms: int = 15000
    ):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.lock_timeout_ms = lock_timeout_ms
        self.statement_timeout_ms = statement_timeout_ms
        self.pool: Optional[asyncpg.Pool] = None
        self._initialized = False

    async def initialize(self):
        """Create connection pool"""
        if self._initialized:
            return

        try:
            logger.info("database_pool_creating", min_size=self.min_size, max_size=self.max_size)

            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                max_queries=50000,
                max_inactive_connection_lifetime=300,
                command_timeout=60,
                server_settings={
                    'application_name': 'space_booking',
                    'jit': 'off',
                    'lock_timeout': str(self.lock_timeout_ms),
                    'statement_timeout': str(self.statement_timeout_ms),
                }
            )

            # Test connection
            async with self.pool.acquire() as conn:
                version = await conn.fetchval("SELECT version()")
                logger.info("database_connected", version=version[:30])

            self._initialized = True
            logger.info("database_pool_ready", **self.get_stats())

        except (asyncpg.PostgresError, OSError) as e:
            logger.error("database_pool_failed", error=str(e))
            raise DatabaseError(f"Cannot connect to database: {e}")

    async def close(self):
        """Close connection pool"""
        if self.pool:
            await self.pool.close()
            self._initialized = False
            logger.info("database_pool_closed")

    @asynccontextmanager
    async def acquire(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Acquire connection from pool"""
        if not self.pool:
            raise DatabaseError("Database pool not initialized")

        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Execute in transaction"""
        async with self.acquire() as conn:
            async with conn.transaction():
                yield conn

    def get_stats(self) -> Dict[str, Any]:
        """Get pool statistics"""
        if not self.pool:
            return {"status": "not_initialized"}

        return {
            "size": self.pool.get_size(),
            "min_size": self.pool.get_min_size(),
            "max_size": self.pool.get_max_size(),
            "free_connections": self.pool.get_idle_size(),
        }


class PostgresSlotTransaction(SlotTransaction):
    """Queries run on the connection that holds the advisory lock"""

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    async def get_space(self, space_id: int) -> Optional[Space]:
        row = await self.conn.fetchrow("SELECT * FROM spaces WHERE id = $1", space_id)
        return Space(**dict(row)) if row else None

    async def get_reservation_for_update(self, reservation_id: int, user_id: int) -> Optional[Reservation]:
        row = await self.conn.fetchrow(f"""
            SELECT {RESERVATION_COLUMNS} FROM reservations
            WHERE id = $1 AND user_id = $2
            FOR UPDATE
        """, reservation_id, user_id)
        return Reservation(**dict(row)) if row else None

    async def has_paid_installments(self, reservation_id: int) -> bool:
        # row locks make a concurrent payment wait for this transaction
        rows = await self.conn.fetch("""
            SELECT paid FROM installments
            WHERE reservation_id = $1
            FOR UPDATE
        """, reservation_id)
        return any(row["paid"] for row in rows)

    async def list_day_reservations(
        self,
        space_id: int,
        day: date,
        exclude_reservation_id: Optional[int] = None
    ) -> List[Reservation]:
        rows = await self.conn.fetch(f"""
            SELECT {RESERVATION_COLUMNS} FROM reservations
            WHERE space_id = $1 AND date = $2
            AND ($3::int IS NULL OR id <> $3)
            ORDER BY start_time, id
        """, space_id, day, exclude_reservation_id)
        return [Reservation(**dict(row)) for row in rows]

    async def insert_reservation(
        self,
        user_id: int,
        space_id: int,
        day: date,
        start_time: time,
        duration: int
    ) -> Reservation:
        row = await self.conn.fetchrow(f"""
            INSERT INTO reservations (user_id, space_id, date, start_time, duration)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING {RESERVATION_COLUMNS}
        """, user_id, space_id, day, start_time, duration)
        return Reservation(**dict(row))

    async def update_reservation(
        self,
        reservation_id: int,
        space_id: int,
        day: date,
        start_time: time,
        duration: int
    ) -> Reservation:
        row = await self.conn.fetchrow(f"""
            UPDATE reservations
            SET space_id = $2, date = $3, start_time = $4, duration = $5, updated_at = NOW()
            WHERE id = $1
            RETURNING {RESERVATION_COLUMNS}
        """, reservation_id, space_id, day, start_time, duration)
        if not row:
            raise ReservationNotFoundError(reservation_id)
        return Reservation(**dict(row))

    async def replace_installments(
        self,
        reservation_id: int,
        drafts: Sequence[InstallmentDraft]
    ) -> List[Installment]:
        await self.conn.execute("DELETE FROM installments WHERE reservation_id = $1", reservation_id)
        if not drafts:
            return []

        rows = await self.conn.fetch(f"""
            INSERT INTO installments (reservation_id, due_date, amount)
            SELECT $1, due_date, amount
            FROM unnest($2::date[], $3::numeric[]) AS t(due_date, amount)
            RETURNING {INSTALLMENT_COLUMNS}
        """, reservation_id, [d.due_date for d in drafts], [d.amount for d in drafts])
        installments = [Installment(**dict(row)) for row in rows]
        return sorted(installments, key=lambda i: (i.due_date, i.id))


class PostgresRepository(BookingRepository):
    """asyncpg-backed repository"""

    name = "postgres"

    def __init__(self, pool: DatabasePool, create_schema: bool = True):
        self.db = pool
        self.create_schema = create_schema

    @classmethod
    def from_settings(cls, settings) -> "PostgresRepository":
        return cls(
            DatabasePool(
                settings.database_url,
                min_size=settings.db_pool_min_size,
                max_size=settings.db_pool_max_size,
                lock_timeout_ms=settings.db_lock_timeout_ms,
                statement_timeout_ms=settings.db_statement_timeout_ms
            ),
            create_schema=settings.db_create_schema
        )

    async def initialize(self) -> None:
        await self.db.initialize()
        if self.create_schema:
            await self.ensure_schema()

    async def ensure_schema(self) -> None:
        """Create tables, indexes and the overlap constraint if missing"""
        async with self.db.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("database_schema_ready")

    async def close(self) -> None:
        await self.db.close()

    async def ping(self) -> bool:
        try:
            async with self.db.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except (asyncpg.PostgresError, asyncpg.InterfaceError, DatabaseError, OSError) as e:
            logger.warning("database_ping_failed", error=str(e))
            return False

    def get_stats(self) -> dict:
        return {"backend": self.name, **self.db.get_stats()}

    @asynccontextmanager
    async def _query(self, space_id: Optional[int] = None, day: Optional[date] = None) -> AsyncIterator[asyncpg.Connection]:
        """Connection whose asyncpg errors surface as domain errors"""
        try:
            async with self.db.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise translate_error(e, space_id, day) from e

    # ============================================================
    # Slot Scope
    # ============================================================

    @asynccontextmanager
    async def slot_scope(self, space_id: int, day: date) -> AsyncIterator[PostgresSlotTransaction]:
        key = slot_key(space_id, day)
        try:
            async with self.db.transaction() as conn:
                await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", key)
                yield PostgresSlotTransaction(conn)
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise translate_error(e, space_id, day) from e

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
        role_value = role.value if hasattr(role, 'value') else role
        try:
            async with self.db.acquire() as conn:
                row = await conn.fetchrow("""
                    INSERT INTO users (name, email, password_hash, role)
                    VALUES ($1, $2, $3, $4)
                    RETURNING *
                """, name, email.lower(), password_hash, role_value)
        except asyncpg.UniqueViolationError as e:
            if "email" in str(e):
                raise DuplicateResourceError("User", email, error_code="email_in_use")
            raise DatabaseError(f"Unique constraint violation: {e}")
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise translate_error(e) from e

        return UserRecord(**dict(row))

    async def get_user(self, user_id: int) -> Optional[UserRecord]:
        async with self._query() as conn:
            row = await conn.fetchrow("SELECT * FROM users WHERE id = $1", user_id)
        return UserRecord(**dict(row)) if row else None

    async def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        async with self._query() as conn:
            row = await conn.fetchrow("SELECT * FROM users WHERE email = $1", email.lower())
        return UserRecord(**dict(row)) if row else None

    async def list_users(
        self,
        limit: int,
        offset: int,
        search: Optional[str] = None,
        sort_by: str = "id",
        descending: bool = False
    ) -> Tuple[List[UserRecord], int]:
        where = ""
        params: list = []
        if search:
            params.append(search)
            where = "WHERE name ILIKE '%' || $1 || '%' OR email ILIKE '%' || $1 || '%'"
        order = order_clause(check_sort_field(sort_by, USER_SORT_FIELDS), descending)

        async with self._query() as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM users {where}", *params)
            rows = await conn.fetch(
                f"SELECT * FROM users {where} {order} LIMIT {int(limit)} OFFSET {int(offset)}",
                *params
            )
        return [UserRecord(**dict(row)) for row in rows], total

    async def update_user(self, user_id: int, updates: UserUpdate) -> Optional[UserRecord]:
        """Update user with partial updates"""
        set_clauses = []
        params: list = [user_id]

        for field, value in updates.model_dump(exclude_unset=True, exclude_none=True).items():
            params.append(value)
            set_clauses.append(f"{field} = ${len(params)}")

        if not set_clauses:
            return await self.get_user(user_id)

        query = f"""
            UPDATE users
            SET {', '.join(set_clauses)}, updated_at = NOW()
            WHERE id = $1
            RETURNING *
        """

        try:
            async with self.db.acquire() as conn:
                row = await conn.fetchrow(query, *params)
        except asyncpg.UniqueViolationError as e:
            if "email" in str(e):
                raise DuplicateResourceError("User", updates.email, error_code="email_in_use")
            raise DatabaseError(f"Unique constraint violation: {e}")
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise translate_error(e) from e

        return UserRecord(**dict(row)) if row else None

    async def delete_user(self, user_id: int) -> bool:
        # reservations and installments go with it (ON DELETE CASCADE)
        async with self._query() as conn:
            deleted = await conn.fetchval("DELETE FROM users WHERE id = $1 RETURNING id", user_id)
        return deleted is not None

    # ============================================================
    # Space Operations
    # ============================================================

    async def list_spaces(
        self,
        limit: int,
        offset: int,
        search: Optional[str] = None,
        sort_by: str = "id",
        descending: bool = False
    ) -> Tuple[List[Space], int]:
        where = ""
        params: list = []
        if search:
            params.append(search)
            where = f"WHERE name ILIKE '%' || ${len(params)} || '%'"
        order = order_clause(check_sort_field(sort_by, SPACE_SORT_FIELDS), descending)

        async with self._query() as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM spaces {where}", *params)
            rows = await conn.fetch(
                f"SELECT * FROM spaces {where} {order} LIMIT {int(limit)} OFFSET {int(offset)}",
                *params
            )
        return [Space(**dict(row)) for row in rows], total

    async def get_space(self, space_id: int) -> Optional[Space]:
        async with self._query() as conn:
            row = await conn.fetchrow("SELECT * FROM spaces WHERE id = $1", space_id)
        return Space(**dict(row)) if row else None

    async def create_space(self, space: SpaceCreate) -> Space:
        async with self._query() as conn:
            row = await conn.fetchrow("""
                INSERT INTO spaces (name, description, price_per_hour, updated_at)
                VALUES ($1, $2, $3, NOW())
                RETURNING *
            """, space.name, space.description, space.price_per_hour)
        return Space(**dict(row))

    async def update_space(self, space_id: int, updates: SpaceUpdate) -> Optional[Space]:
        """Update space with partial updates"""

        # Build dynamic UPDATE query
        set_clauses = []
        params: list = [space_id]

        for field, value in updates.model_dump(exclude_unset=True).items():
            params.append(value)
            set_clauses.append(f"{field} = ${len(params)}")

        if not set_clauses:
            return await self.get_space(space_id)

        query = f"""
            UPDATE spaces
            SET {', '.join(set_clauses)}, updated_at = NOW()
            WHERE id = $1
            RETURNING *
        """

        async with self._query() as conn:
            row = await conn.fetchrow(query, *params)
        return Space(**dict(row)) if row else None

    async def delete_space(self, space_id: int) -> bool:
        # reservations and installments go with it (ON DELETE CASCADE)
        async with self._query() as conn:
            deleted = await conn.fetchval("DELETE FROM spaces WHERE id = $1 RETURNING id", space_id)
        return deleted is not None

    # ============================================================
    # Reservation Operations
    # ============================================================

    async def list_reservations(self, limit: int, offset: int) -> Tuple[List[Reservation], int]:
        async with self._query() as conn:
            total = await conn.fetchval("SELECT COUNT(*) FROM reservations")
            rows = await conn.fetch(f"""
                SELECT {RESERVATION_COLUMNS} FROM reservations
                ORDER BY date DESC, start_time DESC, id DESC
                LIMIT $1 OFFSET $2
            """, limit, offset)
        return [Reservation(**dict(row)) for row in rows], total

    async def list_user_reservations(self, user_id: int) -> List[Reservation]:
        async with self._query() as conn:
            rows = await conn.fetch(f"""
                SELECT {RESERVATION_COLUMNS} FROM reservations
                WHERE user_id = $1
                ORDER BY date DESC, start_time DESC, id DESC
            """, user_id)
        return [Reservation(**dict(row)) for row in rows]

    async def get_user_reservation(self, reservation_id: int, user_id: int) -> Optional[Reservation]:
        async with self._query() as conn:
            row = await conn.fetchrow(f"""
                SELECT {RESERVATION_COLUMNS} FROM reservations
                WHERE id = $1 AND user_id = $2
            """, reservation_id, user_id)
        return Reservation(**dict(row)) if row else None

    async def delete_user_reservation(self, reservation_id: int, user_id: int) -> bool:
        async with self._query() as conn:
            deleted = await conn.fetchval(
                "DELETE FROM reservations WHERE id = $1 AND user_id = $2 RETURNING id",
                reservation_id, user_id
            )
        return deleted is not None

    # ============================================================
    # Installment Operations
    # ============================================================

    async def list_installments(self, reservation_id: int, user_id: int) -> List[Installment]:
        async with self._query() as conn:
            rows = await conn.fetch("""
                SELECT i.id, i.reservation_id, i.due_date, i.amount, i.paid, i.paid_at,
                       i.created_at, i.updated_at
                FROM installments i
                JOIN reservations r ON r.id = i.reservation_id
                WHERE i.reservation_id = $1 AND r.user_id = $2
                ORDER BY i.due_date, i.id
            """, reservation_id, user_id)
        return [Installment(**dict(row)) for row in rows]

    async def mark_installment_paid(
        self,
        installment_id: int,
        user_id: int,
        paid_at: datetime
    ) -> Tuple[Optional[Installment], bool]:
        async with self._query() as conn:
            row = await conn.fetchrow("""
                UPDATE installments i
                SET paid = TRUE, paid_at = $3, updated_at = $3
                FROM reservations r
                WHERE i.id = $1 AND r.id = i.reservation_id AND r.user_id = $2 AND NOT i.paid
                RETURNING i.id, i.reservation_id, i.due_date, i.amount, i.paid, i.paid_at,
                          i.created_at, i.updated_at
            """, installment_id, user_id, paid_at)
            if row:
                return Installment(**dict(row)), True

            # missing, not owned, or already paid
            row = await conn.fetchrow("""
                SELECT i.id, i.reservation_id, i.due_date, i.amount, i.paid, i.paid_at,
                       i.created_at, i.updated_at
                FROM installments i
                JOIN reservations r ON r.id = i.reservation_id
                WHERE i.id = $1 AND r.user_id = $2
            """, installment_id, user_id)
        return (Installment(**dict(row)) if row else None), False
