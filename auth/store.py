"""
auth/store.py -- SQLAlchemy Core persistence layer for credentials.

Pattern: Repository + Data Mapper.
CredentialStore is the repository; _row_to_credential is the mapper.
Route and guard code never touches SQL directly.

This is the persistence collaborator the admission core consumes:
find_credential_by_identifier() at login, create_subject() at registration.
Everything else a subject owns (profile fields, tasks) lives elsewhere.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Only the bcrypt digest is persisted; the plaintext never reaches this layer.

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine

from auth.models import Credential

_DEFAULT_DB_URL = "sqlite:///gatehouse_auth.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_credentials = Table(
    "credentials",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identifier", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("password_changed_at", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_credential(row) -> Credential:
    return Credential(
        id=row.id,
        identifier=row.identifier,
        password_hash=row.password_hash,
        created_at=row.created_at,
        is_active=bool(row.is_active),
    )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for Credential entities.

    Usage:
        store = CredentialStore("sqlite:///:memory:")
        subject_id = store.create_subject("alice", hash_password("secret-pass"))
        credential = store.find_credential_by_identifier("alice")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def create_subject(self, identifier: str, password_hash: str, is_active: bool = True) -> int:
        """Insert a new credential and return the subject's database ID.

        is_active=False seeds a disabled account; login refuses it.

        Raises sqlalchemy.exc.IntegrityError if the identifier already exists.
        Callers (POST /auth/register) map that to 409; concurrent registrations
        of the same identifier are serialized by the UNIQUE constraint.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _credentials.insert().values(
                    identifier=identifier,
                    password_hash=password_hash,
                    created_at=_now_iso(),
                    is_active=1 if is_active else 0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def find_credential_by_identifier(self, identifier: str) -> Credential | None:
        """Look up a credential by exact identifier (case-sensitive). None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_credentials.select().where(_credentials.c.identifier == identifier)).fetchone()
        return _row_to_credential(row) if row is not None else None

    def get_by_id(self, subject_id: int) -> Credential | None:
        with self.engine.connect() as conn:
            row = conn.execute(_credentials.select().where(_credentials.c.id == subject_id)).fetchone()
        return _row_to_credential(row) if row is not None else None

    def update_password(self, subject_id: int, password_hash: str) -> bool:
        """Replace the stored digest. Returns False if subject_id was not found."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _credentials.update()
                .where(_credentials.c.id == subject_id)
                .values(password_hash=password_hash, password_changed_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def count(self) -> int:
        """Return the number of stored credentials. Used by the health check as a DB ping."""
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_credentials)).scalar()
        return result or 0

    def close(self) -> None:
        self.engine.dispose()
