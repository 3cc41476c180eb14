import itertools
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Iterator, List, Optional

from db_models import Contact, LinkPrecedence
from errors import StoreFailure

logger = logging.getLogger(__name__)

SCHEMA = [
    '''
        CREATE TABLE IF NOT EXISTS Contact (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            phoneNumber TEXT,
            email TEXT,
            linkedId INTEGER,
            linkPrecedence TEXT NOT NULL CHECK(linkPrecedence IN ('secondary', 'primary')),
            createdAt TEXT NOT NULL,
            updatedAt TEXT NOT NULL,
            deletedAt TEXT,
            FOREIGN KEY (linkedId) REFERENCES Contact (id)
        )
    ''',
    "CREATE INDEX IF NOT EXISTS idx_contact_email ON Contact (email)",
    "CREATE INDEX IF NOT EXISTS idx_contact_phone ON Contact (phoneNumber)",
    "CREATE INDEX IF NOT EXISTS idx_contact_linked ON Contact (linkedId)",
]

# columns an update may touch; email and phoneNumber are immutable
UPDATABLE_FIELDS = frozenset({"linkedId", "linkPrecedence"})

ORDER_BY_SENIORITY = "ORDER BY createdAt ASC, id ASC"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def get_db_connection(db_path: str, timeout: float = 10.0) -> sqlite3.Connection:
    # isolation_level=None: transactions are opened explicitly by ContactStore
    conn = sqlite3.connect(db_path, timeout=timeout, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(db_path: str) -> None:
    conn = get_db_connection(db_path)
    try:
        for statement in SCHEMA:
            conn.execute(statement)
    finally:
        conn.close()
    logger.info("Contact schema ready at %s", db_path)


class ContactRepository:
    """Queries and writes against the Contact table inside one open transaction.

    Every read excludes soft-deleted rows. Every ``sqlite3.Error`` surfaces as
    :class:`StoreFailure` with the driver error chained.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._savepoints = itertools.count(1)

    def _execute(self, query: str, params: Iterable = ()) -> sqlite3.Cursor:
        try:
            return self.conn.execute(query, tuple(params))
        except sqlite3.Error as exc:
            raise StoreFailure(f"Contact store query failed: {exc}") from exc

    def _select(self, query: str, params: Iterable = ()) -> List[Contact]:
        rows = self._execute(query, params).fetchall()
        return [Contact(**dict(row)) for row in rows]

    def find_matching(self, email: Optional[str] = None, phone: Optional[str] = None) -> List[Contact]:
        """Contacts whose email equals ``email`` OR whose phone equals ``phone``, oldest first."""
        clauses = []
        params = []
        if email:
            clauses.append("email = ?")
            params.append(email)
        if phone:
            clauses.append("phoneNumber = ?")
            params.append(phone)
        if not clauses:
            return []

        query = f"""
            SELECT * FROM Contact
            WHERE deletedAt IS NULL
            AND ({" OR ".join(clauses)})
            {ORDER_BY_SENIORITY}
        """
        return self._select(query, params)

    def find_by_ids(self, ids: Iterable[int], precedence: Optional[LinkPrecedence] = None) -> List[Contact]:
        ids = sorted(set(ids))
        if not ids:
            return []

        query = f"SELECT * FROM Contact WHERE deletedAt IS NULL AND id IN ({', '.join('?' * len(ids))})"
        params = list(ids)
        if precedence is not None:
            query += " AND linkPrecedence = ?"
            params.append(LinkPrecedence(precedence).value)
        return self._select(query + " " + ORDER_BY_SENIORITY, params)

    def find_by_linked_id(self, linked_id: int) -> List[Contact]:
        return self._select(
            f"SELECT * FROM Contact WHERE linkedId = ? AND deletedAt IS NULL {ORDER_BY_SENIORITY}",
            (linked_id,),
        )

    def find_cluster(self, primary_id: int) -> List[Contact]:
        """The primary itself plus every live contact linked to it, oldest first."""
        return self._select(
            f"""
            SELECT * FROM Contact
            WHERE (id = ? OR linkedId = ?) AND deletedAt IS NULL
            {ORDER_BY_SENIORITY}
            """,
            (primary_id, primary_id),
        )

    def create(
        self,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        linked_id: Optional[int] = None,
        precedence: LinkPrecedence = LinkPrecedence.PRIMARY,
    ) -> Contact:
        now = utc_now()
        cursor = self._execute(
            """
            INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (phone, email, linked_id, LinkPrecedence(precedence).value, now, now),
        )
        row = self._execute("SELECT * FROM Contact WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return Contact(**dict(row))

    def update(self, contact_id: int, **fields) -> None:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update Contact fields: {', '.join(sorted(unknown))}")
        if not fields:
            return

        values = {
            name: value.value if isinstance(value, LinkPrecedence) else value
            for name, value in fields.items()
        }
        assignments = ", ".join(f"{name} = ?" for name in values)
        self._execute(
            f"UPDATE Contact SET {assignments}, updatedAt = ? WHERE id = ?",
            (*values.values(), utc_now(), contact_id),
        )

    def update_where_linked_id(self, old_linked_id: int, new_linked_id: int) -> int:
        """Re-point every contact linked to ``old_linked_id``; returns the row count."""
        cursor = self._execute(
            "UPDATE Contact SET linkedId = ?, updatedAt = ? WHERE linkedId = ?",
            (new_linked_id, utc_now(), old_linked_id),
        )
        return cursor.rowcount

    @contextmanager
    def savepoint(self) -> Iterator["ContactRepository"]:
        """Group writes so they are kept or discarded together."""
        name = f"sp_{next(self._savepoints)}"
        self._execute(f"SAVEPOINT {name}")
        try:
            yield self
        except BaseException:
            self._execute(f"ROLLBACK TO {name}")
            self._execute(f"RELEASE {name}")
            raise
        self._execute(f"RELEASE {name}")


class ContactStore:
    """Long-lived handle on the sqlite database holding contacts.

    Built once at startup. Each :meth:`transaction` opens its own connection
    and takes the database write lock up front, so concurrent transactions
    run one after another rather than interleaving.
    """

    def __init__(self, db_path: str, timeout: float = 10.0):
        self.db_path = db_path
        self.timeout = timeout

    def init_schema(self) -> None:
        try:
            init_db(self.db_path)
        except sqlite3.Error as exc:
            raise StoreFailure(f"Could not initialise contact store: {exc}") from exc

    @contextmanager
    def transaction(self) -> Iterator[ContactRepository]:
        try:
            conn = get_db_connection(self.db_path, self.timeout)
        except sqlite3.Error as exc:
            raise StoreFailure(f"Could not open contact store: {exc}") from exc

        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise StoreFailure(f"Could not lock contact store: {exc}") from exc

            try:
                yield ContactRepository(conn)
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

            try:
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise StoreFailure(f"Could not commit contact changes: {exc}") from exc
        finally:
            conn.close()
