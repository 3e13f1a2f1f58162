"""SQLite-backed authoritative user directory."""
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, List, Optional

from passlib.context import CryptContext

from .errors import DirectoryUnavailable, ValidationError
from .models import DirectoryUser

_pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the directory database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "directory.sqlite3").resolve(strict=False)


def _current_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def eligibility_problem(user: DirectoryUser) -> Optional[str]:
    """Return why ``user`` cannot be synchronised, or ``None`` if it can."""

    if not user.username:
        return "no-username"
    if not user.email_verified:
        return "not-verified"
    return None


class Directory:
    """Reads (and, for the account hooks, writes) the ``users`` table."""

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _session(self) -> Generator[sqlite3.Connection, None, None]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise DirectoryUnavailable(f"Unable to open user directory: {exc}") from exc
        try:
            with conn:
                yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            raise DirectoryUnavailable(f"User directory query failed: {exc}") from exc
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the users table if it does not already exist."""

        with self._session() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT NOT NULL UNIQUE,
                    username TEXT UNIQUE,
                    name TEXT NOT NULL DEFAULT '',
                    role TEXT NOT NULL DEFAULT 'user',
                    email_verified INTEGER NOT NULL DEFAULT 0,
                    password_hash TEXT,
                    created_at TEXT NOT NULL,
                    deleted_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_users_username ON users(username);
                """
            )

    # ------------------------------------------------------------------
    # Reader interface used by the reconciler
    # ------------------------------------------------------------------
    def list_users(self) -> List[DirectoryUser]:
        """Return every live user, eligible or not, ordered by id."""

        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM users WHERE deleted_at IS NULL ORDER BY id"
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def list_eligible_users(self) -> List[DirectoryUser]:
        return [user for user in self.list_users() if eligibility_problem(user) is None]

    def get_by_id(self, user_id: int) -> Optional[DirectoryUser]:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE id = ? AND deleted_at IS NULL",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    # ------------------------------------------------------------------
    # Account maintenance
    # ------------------------------------------------------------------
    def create_user(
        self,
        email: str,
        name: str,
        *,
        username: Optional[str] = None,
        role: str = "user",
        email_verified: bool = False,
        password: Optional[str] = None,
    ) -> DirectoryUser:
        normalized_email = email.strip().lower()
        if not normalized_email:
            raise ValidationError("Email must not be empty")
        cleaned_username = username.strip() if username else None
        password_hash = _pwd_context.hash(password) if password else None

        with self._session() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO users (email, username, name, role, email_verified, password_hash, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        normalized_email,
                        cleaned_username or None,
                        name.strip(),
                        role,
                        1 if email_verified else 0,
                        password_hash,
                        _current_timestamp(),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ValidationError("A user with that email or username already exists") from exc
            user_id = cursor.lastrowid

        user = self.get_by_id(user_id)
        assert user is not None
        return user

    def set_username(self, user_id: int, username: Optional[str]) -> Optional[DirectoryUser]:
        cleaned = username.strip() if username else None
        with self._session() as conn:
            try:
                cursor = conn.execute(
                    "UPDATE users SET username = ? WHERE id = ? AND deleted_at IS NULL",
                    (cleaned or None, user_id),
                )
            except sqlite3.IntegrityError as exc:
                raise ValidationError("That username is already taken") from exc
        if cursor.rowcount == 0:
            return None
        return self.get_by_id(user_id)

    def mark_email_verified(self, user_id: int) -> Optional[DirectoryUser]:
        with self._session() as conn:
            cursor = conn.execute(
                "UPDATE users SET email_verified = 1 WHERE id = ? AND deleted_at IS NULL",
                (user_id,),
            )
        if cursor.rowcount == 0:
            return None
        return self.get_by_id(user_id)

    def set_password(self, user_id: int, password: str) -> bool:
        if not password:
            raise ValidationError("Password must not be empty")
        with self._session() as conn:
            cursor = conn.execute(
                "UPDATE users SET password_hash = ? WHERE id = ? AND deleted_at IS NULL",
                (_pwd_context.hash(password), user_id),
            )
        return cursor.rowcount > 0

    def verify_password(self, user_id: int, password: str) -> bool:
        with self._session() as conn:
            row = conn.execute(
                "SELECT password_hash FROM users WHERE id = ? AND deleted_at IS NULL",
                (user_id,),
            ).fetchone()
        if row is None or not row["password_hash"]:
            return False
        try:
            return _pwd_context.verify(password, row["password_hash"])
        except ValueError:
            return False

    def soft_delete(self, user_id: int) -> bool:
        with self._session() as conn:
            cursor = conn.execute(
                "UPDATE users SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (_current_timestamp(), user_id),
            )
        return cursor.rowcount > 0

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> DirectoryUser:
        return DirectoryUser(
            id=int(row["id"]),
            username=row["username"] or None,
            email=row["email"],
            email_verified=bool(row["email_verified"]),
            display_name=row["name"] or "",
            role=row["role"] or "user",
        )


__all__ = ["Directory", "resolve_database_path", "eligibility_problem"]
