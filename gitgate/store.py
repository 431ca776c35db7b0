# store.py -- Relational storage for the repository index
# Copyright (C) 2026 The gitgate Authors
#
# SPDX-License-Identifier: Apache-2.0 OR GPL-2.0-or-later
# gitgate is dual-licensed under the Apache License, Version 2.0 and the GNU
# General Public License as published by the Free Software Foundation; version 2.0
# or (at your option) any later version. You can redistribute it and/or
# modify it under the terms of either of these two licenses.
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
# You should have received a copy of the licenses; if not, see
# <http://www.gnu.org/licenses/> for a copy of the GNU General Public License
# and <http://www.apache.org/licenses/LICENSE-2.0> for a copy of the Apache
# License, Version 2.0.
#

"""Relational storage for the repository index.

:class:`IndexStore` owns the SQLAlchemy engine and session factory and
provides the two write primitives the indexer relies on: batched
insert-or-ignore against the unique constraints of the index tables, and
best-effort writes to the full-text search table.
"""

from collections.abc import Iterator, Sequence
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine, delete, event, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from . import log_utils
from .config import DEFAULT_BATCH_SIZE
from .models import INDEX_MODELS, SEARCH_TABLE, Base

logger = log_utils.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_MS = 30000

# Execution option marking connections that take the write lock up front.
WRITE_OPTION = "gitgate_write"

_DIALECT_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


def _is_memory_url(database_url: str) -> bool:
    return database_url in ("sqlite://", "sqlite:///:memory:")


def create_store_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine suitable for concurrent use from worker threads."""
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo, pool_pre_ping=True)

    kwargs: dict[str, object] = {"connect_args": {"check_same_thread": False}}
    if _is_memory_url(database_url):
        # A single shared connection, otherwise every thread sees its own
        # empty database.
        kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, echo=echo, **kwargs)

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        # Transactions are started by the "begin" listener below.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        if not _is_memory_url(database_url):
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _begin(conn):  # type: ignore[no-untyped-def]
        # Write transactions hold the write lock from their start; readers
        # only take a snapshot and never wait on writers in WAL mode.
        if conn.get_execution_options().get(WRITE_OPTION):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")

    return engine


class IndexStore:
    """Storage for users, repositories and the derived repository index."""

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self.database_url = database_url
        self.engine = create_store_engine(database_url, echo=echo)
        self._sessionmaker = sessionmaker(
            self.engine,
            class_=Session,
            expire_on_commit=False,
            autoflush=False,
        )
        self._write_sessionmaker = sessionmaker(
            self.engine.execution_options(**{WRITE_OPTION: True}),
            class_=Session,
            expire_on_commit=False,
            autoflush=False,
        )

    @property
    def supports_search(self) -> bool:
        return self.engine.dialect.name == "sqlite"

    def create_all(self) -> None:
        """Create all tables, including the full-text search table."""
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self, write: bool = False) -> Iterator[Session]:
        """Open a session that commits on success and rolls back on error.

        Args:
          write: Take the database write lock when the transaction starts.
            Sessions that modify rows must pass True; on SQLite a read
            transaction that later writes can fail instead of waiting.
        """
        maker = self._write_sessionmaker if write else self._sessionmaker
        session = maker()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def insert_ignore(
        self,
        session: Session,
        rows: Sequence[Base],
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        """Insert model instances, skipping rows that hit a unique constraint.

        All rows must be instances of the same model. Rows are sent in
        batches of at most batch_size to stay under the bound-parameter
        limits of the database.
        """
        if not rows:
            return
        model = type(rows[0])
        make_insert = _DIALECT_INSERTS[self.engine.dialect.name]
        stmt = make_insert(model).on_conflict_do_nothing()
        for start in range(0, len(rows), batch_size):
            batch = [row.as_row() for row in rows[start : start + batch_size]]
            session.execute(stmt, batch)

    def add_search_document(
        self,
        session: Session,
        repo_id: str,
        blob_oid: str,
        file_path: str,
        content: str,
    ) -> bool:
        """Add a blob to the full-text search index.

        Failures are logged and reported through the return value; they never
        propagate, so the caller's own row writes are unaffected.
        """
        if not self.supports_search:
            return False
        try:
            session.execute(
                text(
                    f"DELETE FROM {SEARCH_TABLE} "
                    "WHERE repo_id = :repo_id AND blob_oid = :blob_oid "
                    "AND file_path = :file_path"
                ),
                {"repo_id": repo_id, "blob_oid": blob_oid, "file_path": file_path},
            )
            session.execute(
                text(
                    f"INSERT INTO {SEARCH_TABLE}(repo_id, blob_oid, file_path, content) "
                    "VALUES (:repo_id, :blob_oid, :file_path, :content)"
                ),
                {
                    "repo_id": repo_id,
                    "blob_oid": blob_oid,
                    "file_path": file_path,
                    "content": content,
                },
            )
        except SQLAlchemyError as e:
            logger.warning(
                "Unable to add %s (%s) to the search index of %s: %s",
                file_path,
                blob_oid,
                repo_id,
                e,
            )
            return False
        return True

    def clear_repository(self, session: Session, repo_id: str) -> None:
        """Delete every indexed row of a repository."""
        for model in INDEX_MODELS:
            session.execute(delete(model).where(model.repo_id == repo_id))
        if self.supports_search:
            try:
                session.execute(
                    text(f"DELETE FROM {SEARCH_TABLE} WHERE repo_id = :repo_id"),
                    {"repo_id": repo_id},
                )
            except SQLAlchemyError as e:
                logger.warning("Unable to clear search index of %s: %s", repo_id, e)
