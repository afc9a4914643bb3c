"""
auth/users.py -- User directory: primary users table plus three lookup indexes.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user /
_row_to_summary are the mappers. Route, gate and CLI code never touch SQL
directly.

Consistency discipline:
  Every write that touches more than one table runs through
  run_unit_of_work() so the primary row and its index rows commit or roll
  back together. The denormalized copies (username index: password_hash,
  role_id, is_active; api-key index: is_active) are rewritten whenever the
  primary value changes, using the current primary row for any field the
  caller did not change.

  Users are never physically deleted. Deactivation flips is_active on the
  primary row and both denormalized copies; index rows stay in place.

Duplicate policy:
  create() checks the username and email indexes up front and raises
  DuplicateUsername / DuplicateEmail. The index tables' primary keys are the
  final arbiter: if a concurrent create slips between the check and the
  insert, the IntegrityError rolls the whole unit back and is re-classified
  into the matching duplicate error.

Security:
  All queries use bound parameters. No f-strings in SQL.
  find_by_api_key() trusts the primary row's is_active, not the index copy.

Layer rule: no imports from api/ or sessions/.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterator

from sqlalchemy import func, select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth.credentials import generate_api_key, hash_password, verify_dummy, verify_password
from auth.errors import DuplicateEmail, DuplicateUsername
from auth.models import PublicUser, User, UserSummary
from auth.schema import create_store_engine, users, users_by_api_key, users_by_email, users_by_username
from auth.unit_of_work import run_unit_of_work
from core.config import get_settings

logger = logging.getLogger("wikiauth.users")

# Fields callers may change through update(). username / email are immutable
# because they key the index tables.
_UPDATABLE: frozenset[str] = frozenset({"password_hash", "role_id", "is_active"})

_DENORMALIZED: tuple[str, ...] = ("password_hash", "role_id", "is_active")


def _now_ms() -> int:
    return int(time.time() * 1000)


class UserStore:
    """Repository for User records and their username/email/API-key indexes.

    Usage:
        store = UserStore()
        user = store.create("alice", "alice@example.com", "s3cretpass", role_id)
        same = store.find_by_email("alice@example.com")
        store.deactivate(user.user_id)
        store.close()
    """

    def __init__(self, db_url: str | None = None, write_retries: int | None = None) -> None:
        settings = get_settings()
        self.engine = create_store_engine(db_url or settings.database_url)
        self.write_retries = settings.store_write_retries if write_retries is None else write_retries

    def _run(self, work, label: str):
        return run_unit_of_work(self.engine, work, retries=self.write_retries, label=label)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, username: str, email: str, password: str, role_id: str | None = None) -> User:
        """Create a user and its three index rows. Returns the full record.

        Raises DuplicateUsername / DuplicateEmail when either key is taken.
        """
        if self.username_exists(username):
            raise DuplicateUsername(username)
        if self.email_exists(email):
            raise DuplicateEmail(email)

        now = _now_ms()
        user = User(
            user_id=str(uuid.uuid4()),
            username=username,
            email=email,
            password_hash=hash_password(password),
            api_key=generate_api_key(),
            role_id=role_id,
            is_active=True,
            created_at=now,
            updated_at=now,
        )

        def work(conn: Connection) -> None:
            conn.execute(
                users.insert().values(
                    user_id=user.user_id,
                    username=user.username,
                    email=user.email,
                    password_hash=user.password_hash,
                    role_id=user.role_id,
                    api_key=user.api_key,
                    is_active=1,
                    created_at=user.created_at,
                    updated_at=user.updated_at,
                )
            )
            conn.execute(
                users_by_username.insert().values(
                    username=user.username,
                    user_id=user.user_id,
                    password_hash=user.password_hash,
                    role_id=user.role_id,
                    is_active=1,
                )
            )
            conn.execute(users_by_email.insert().values(email=user.email, user_id=user.user_id))
            conn.execute(users_by_api_key.insert().values(api_key=user.api_key, user_id=user.user_id, is_active=1))

        try:
            self._run(work, "create user")
        except IntegrityError as exc:
            # A concurrent create won the race between the checks above and the insert.
            if self.username_exists(username):
                raise DuplicateUsername(username) from exc
            if self.email_exists(email):
                raise DuplicateEmail(email) from exc
            raise

        logger.info("Created user %s (%s)", user.user_id, user.username)
        return user

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_by_id(self, user_id: str | None) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        if not user_id:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.user_id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_username(self, username: str) -> User | None:
        """Resolve username via users_by_username, then fetch the primary row."""
        with self.engine.connect() as conn:
            user_id = conn.execute(
                select(users_by_username.c.user_id).where(users_by_username.c.username == username)
            ).scalar()
        return self.find_by_id(user_id)

    def find_by_email(self, email: str) -> User | None:
        """Resolve email via users_by_email, then fetch the primary row."""
        with self.engine.connect() as conn:
            user_id = conn.execute(select(users_by_email.c.user_id).where(users_by_email.c.email == email)).scalar()
        return self.find_by_id(user_id)

    def find_by_api_key(self, api_key: str) -> User | None:
        """Resolve an API key to an active user. Inactive users are not found.

        The primary row decides activation. The index copy of is_active is
        only compared against it so drift shows up in the logs; an index row
        that no longer matches the user's current key is ignored.
        """
        if not api_key:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(users_by_api_key.select().where(users_by_api_key.c.api_key == api_key)).fetchone()
        if row is None:
            return None

        user = self.find_by_id(row.user_id)
        if user is None:
            logger.warning("users_by_api_key row points at missing user %s", row.user_id)
            return None
        if user.api_key != api_key:
            logger.warning("Stale users_by_api_key row for user %s", user.user_id)
            return None
        if bool(row.is_active) != user.is_active:
            logger.warning("users_by_api_key.is_active out of sync for user %s", user.user_id)
        return user if user.is_active else None

    def username_exists(self, username: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(users_by_username.c.user_id).where(users_by_username.c.username == username)
            ).fetchone()
        return row is not None

    def email_exists(self, email: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(users_by_email.c.user_id).where(users_by_email.c.email == email)).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update(self, user_id: str, **fields) -> User | None:
        """Update mutable fields and re-propagate denormalized copies.

        Accepted fields: password_hash, role_id, is_active. Unknown fields
        raise ValueError. updated_at is always stamped, even when fields is
        empty. Returns the updated record, or None if user_id was not found.
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")

        values = dict(fields)
        if "is_active" in values:
            values["is_active"] = 1 if values["is_active"] else 0

        def work(conn: Connection) -> User | None:
            row = conn.execute(users.select().where(users.c.user_id == user_id)).fetchone()
            if row is None:
                return None
            current = _row_to_user(row)

            conn.execute(users.update().where(users.c.user_id == user_id).values(updated_at=_now_ms(), **values))

            if any(name in values for name in _DENORMALIZED):
                conn.execute(
                    users_by_username.update()
                    .where(users_by_username.c.username == current.username)
                    .values(
                        password_hash=values.get("password_hash", current.password_hash),
                        role_id=values["role_id"] if "role_id" in values else current.role_id,
                        is_active=values.get("is_active", 1 if current.is_active else 0),
                    )
                )
            if "is_active" in values:
                conn.execute(
                    users_by_api_key.update()
                    .where(users_by_api_key.c.api_key == current.api_key)
                    .values(is_active=values["is_active"])
                )

            updated = conn.execute(users.select().where(users.c.user_id == user_id)).fetchone()
            return _row_to_user(updated)

        return self._run(work, "update user")

    def update_role(self, user_id: str, role_id: str | None) -> User | None:
        return self.update(user_id, role_id=role_id)

    def change_password(self, user_id: str, new_password: str) -> User | None:
        return self.update(user_id, password_hash=hash_password(new_password))

    def deactivate(self, user_id: str) -> User | None:
        """Soft delete: the record and its index rows stay, is_active goes false."""
        user = self.update(user_id, is_active=False)
        if user is not None:
            logger.info("Deactivated user %s", user_id)
        return user

    def reactivate(self, user_id: str) -> User | None:
        user = self.update(user_id, is_active=True)
        if user is not None:
            logger.info("Reactivated user %s", user_id)
        return user

    def regenerate_api_key(self, user_id: str) -> str | None:
        """Rotate the user's API key. Returns the new key, or None if not found.

        The old index row is deleted and the new one inserted in the same
        transaction as the primary update, so the old key stops resolving the
        moment the new one starts. Activation state carries over unchanged.
        """

        def work(conn: Connection) -> str | None:
            row = conn.execute(users.select().where(users.c.user_id == user_id)).fetchone()
            if row is None:
                return None
            current = _row_to_user(row)
            new_key = generate_api_key()

            conn.execute(users_by_api_key.delete().where(users_by_api_key.c.api_key == current.api_key))
            conn.execute(users.update().where(users.c.user_id == user_id).values(api_key=new_key, updated_at=_now_ms()))
            conn.execute(
                users_by_api_key.insert().values(
                    api_key=new_key,
                    user_id=user_id,
                    is_active=1 if current.is_active else 0,
                )
            )
            return new_key

        new_key = self._run(work, "rotate api key")
        if new_key is not None:
            logger.info("Rotated API key for user %s", user_id)
        return new_key

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authenticate(self, username: str, password: str) -> User | None:
        """Verify a username/password login. Returns the full record or None.

        Unknown user, inactive user and wrong password all return None, and
        each path runs exactly one bcrypt verification so response time does
        not reveal which case applied.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                users_by_username.select().where(users_by_username.c.username == username)
            ).fetchone()
        if row is None or not row.is_active:
            verify_dummy(password)
            return None
        if not verify_password(password, row.password_hash):
            return None
        user = self.find_by_id(row.user_id)
        if user is None or not user.is_active:
            return None
        return user

    @staticmethod
    def to_safe(user: User) -> PublicUser:
        """Strip password_hash and api_key for output."""
        return PublicUser(
            user_id=user.user_id,
            username=user.username,
            email=user.email,
            role_id=user.role_id,
            is_active=user.is_active,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )

    # ------------------------------------------------------------------
    # Listing and counts
    # ------------------------------------------------------------------

    def list_all(self, limit: int = 100) -> Iterator[UserSummary]:
        """Yield every user, fetching `limit` rows per query.

        Keyset pagination on user_id: each page is its own short query, so no
        connection is held between yields. The generator is single-use; call
        list_all() again for a fresh scan.
        """
        if limit < 1:
            raise ValueError("limit must be at least 1")
        page = (
            select(
                users.c.user_id,
                users.c.username,
                users.c.email,
                users.c.role_id,
                users.c.is_active,
                users.c.created_at,
            )
            .order_by(users.c.user_id)
            .limit(limit)
        )
        last_id: str | None = None
        while True:
            stmt = page if last_id is None else page.where(users.c.user_id > last_id)
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).fetchall()
            for row in rows:
                yield _row_to_summary(row)
            if len(rows) < limit:
                return
            last_id = rows[-1].user_id

    def count(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(users)).scalar() or 0

    def count_active(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(users).where(users.c.is_active == 1)).scalar() or 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        user_id=row.user_id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        api_key=row.api_key,
        role_id=row.role_id,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_summary(row) -> UserSummary:
    return UserSummary(
        user_id=row.user_id,
        username=row.username,
        email=row.email,
        role_id=row.role_id,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )
