# models.py -- Schema of the gateway and repository index
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

"""Schema of the gateway and repository index.

Two groups of tables live here. The identity tables (users, keys, tokens,
repositories and collaborators) are owned by the surrounding application;
the gateway only reads them. The ``git_*`` tables are derived from the
repositories on disk by :mod:`gitgate.indexer`: commit, tree and blob rows are
content-addressed and immutable, while ref and ancestry rows follow the refs.

Rows are validated when they are constructed, so a malformed object id fails
at the point where it was produced rather than when it is read back.
"""

import re
import uuid
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    DDL,
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates

from .errors import InvalidObjectId

_OID_RE = re.compile(r"[0-9a-f]{40}|[0-9a-f]{64}")

REF_TYPES = ("branch", "tag")
ENTRY_TYPES = ("blob", "tree")
CHANGE_TYPES = ("add", "modify", "delete", "rename")
PERMISSIONS = ("read", "write", "admin")


def validate_oid(value: object) -> str:
    """Check that value is a lowercase hex object id and return it."""
    if not isinstance(value, str) or not _OID_RE.fullmatch(value):
        raise InvalidObjectId(value)
    return value


def _validate_choice(key: str, value: str, choices: Sequence[str]) -> str:
    if value not in choices:
        raise ValueError(f"{key} must be one of {', '.join(choices)}, got {value!r}")
    return value


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all gitgate models."""

    def as_row(self) -> dict[str, Any]:
        """Column values of this instance, for bulk Core inserts.

        Unset primary keys are left out for the database to assign; other
        unset columns take their column default.
        """
        row = {}
        for column in self.__table__.columns:
            value = getattr(self, column.key)
            if value is None:
                if column.primary_key:
                    continue
                default = column.default
                if default is not None:
                    value = default.arg(None) if default.is_callable else default.arg
            row[column.key] = value
        return row


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    username: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<User {self.username}>"


class SSHKey(Base):
    __tablename__ = "ssh_keys"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    public_key: Mapped[str] = mapped_column(Text, nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class AccessToken(Base):
    """Personal access token, usable as the password in HTTP Basic auth."""

    __tablename__ = "access_tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class Repository(Base):
    __tablename__ = "repositories"
    __table_args__ = (UniqueConstraint("owner_id", "name", name="repo_owner_name_idx"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    default_branch: Mapped[str] = mapped_column(String(255), default="main", nullable=False)
    is_public: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    disk_path: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Repository {self.name} public={self.is_public}>"


class Collaborator(Base):
    __tablename__ = "repo_collaborators"
    __table_args__ = (
        UniqueConstraint("repo_id", "user_id", name="repo_collaborators_repo_user_idx"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    repo_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    permission: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    @validates("permission")
    def _validate_permission(self, key: str, value: str) -> str:
        return _validate_choice(key, value, PERMISSIONS)


class GitRef(Base):
    __tablename__ = "git_refs"
    __table_args__ = (
        UniqueConstraint("repo_id", "type", "name", name="git_refs_repo_type_name_idx"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    repo_id: Mapped[str] = mapped_column(String(36), nullable=False)
    name: Mapped[str] = mapped_column(String(1024), nullable=False)
    type: Mapped[str] = mapped_column(String(8), nullable=False)
    commit_oid: Mapped[str] = mapped_column(String(64), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    @validates("type")
    def _validate_type(self, key: str, value: str) -> str:
        return _validate_choice(key, value, REF_TYPES)

    @validates("commit_oid")
    def _validate_commit_oid(self, key: str, value: str) -> str:
        return validate_oid(value)


class GitCommit(Base):
    __tablename__ = "git_commits"
    __table_args__ = (
        UniqueConstraint("repo_id", "oid", name="git_commits_repo_oid_idx"),
        Index("git_commits_repo_author_ts_idx", "repo_id", "author_timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    repo_id: Mapped[str] = mapped_column(String(36), nullable=False)
    oid: Mapped[str] = mapped_column(String(64), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    author_name: Mapped[str] = mapped_column(String(255), nullable=False)
    author_email: Mapped[str] = mapped_column(String(255), nullable=False)
    author_timestamp: Mapped[int] = mapped_column(Integer, nullable=False)
    author_timezone: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    committer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    committer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    committer_timestamp: Mapped[int] = mapped_column(Integer, nullable=False)
    committer_timezone: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    parent_oids: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    tree_oid: Mapped[str] = mapped_column(String(64), nullable=False)

    @validates("oid", "tree_oid")
    def _validate_oids(self, key: str, value: str) -> str:
        return validate_oid(value)

    @validates("parent_oids")
    def _validate_parents(self, key: str, value: Sequence[str]) -> list[str]:
        return [validate_oid(p) for p in value]


class GitTreeEntry(Base):
    __tablename__ = "git_tree_entries"
    __table_args__ = (
        UniqueConstraint(
            "repo_id", "root_tree_oid", "entry_path", name="git_tree_entry_tree_path_idx"
        ),
        Index("git_tree_entry_listing_idx", "repo_id", "root_tree_oid", "parent_path"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    repo_id: Mapped[str] = mapped_column(String(36), nullable=False)
    root_tree_oid: Mapped[str] = mapped_column(String(64), nullable=False)
    parent_path: Mapped[str] = mapped_column(Text, nullable=False)
    entry_name: Mapped[str] = mapped_column(Text, nullable=False)
    entry_path: Mapped[str] = mapped_column(Text, nullable=False)
    entry_type: Mapped[str] = mapped_column(String(8), nullable=False)
    entry_oid: Mapped[str] = mapped_column(String(64), nullable=False)
    entry_mode: Mapped[int | None] = mapped_column(Integer)

    @validates("root_tree_oid", "entry_oid")
    def _validate_oids(self, key: str, value: str) -> str:
        return validate_oid(value)

    @validates("entry_type")
    def _validate_entry_type(self, key: str, value: str) -> str:
        return _validate_choice(key, value, ENTRY_TYPES)


class GitBlob(Base):
    __tablename__ = "git_blobs"
    __table_args__ = (UniqueConstraint("repo_id", "oid", name="git_blobs_repo_oid_idx"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    repo_id: Mapped[str] = mapped_column(String(36), nullable=False)
    oid: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str | None] = mapped_column(Text)
    size: Mapped[int] = mapped_column(Integer, nullable=False)
    is_binary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_truncated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    @validates("oid")
    def _validate_oid(self, key: str, value: str) -> str:
        return validate_oid(value)


class GitCommitFile(Base):
    __tablename__ = "git_commit_files"
    __table_args__ = (
        UniqueConstraint(
            "repo_id", "commit_oid", "file_path", name="git_commit_files_repo_commit_path_idx"
        ),
        Index("git_commit_files_repo_path_idx", "repo_id", "file_path"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    repo_id: Mapped[str] = mapped_column(String(36), nullable=False)
    commit_oid: Mapped[str] = mapped_column(String(64), nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    change_type: Mapped[str] = mapped_column(String(8), nullable=False)

    @validates("commit_oid")
    def _validate_commit_oid(self, key: str, value: str) -> str:
        return validate_oid(value)

    @validates("change_type")
    def _validate_change_type(self, key: str, value: str) -> str:
        return _validate_choice(key, value, CHANGE_TYPES)


class GitCommitAncestry(Base):
    __tablename__ = "git_commit_ancestry"
    __table_args__ = (
        UniqueConstraint(
            "repo_id",
            "ref_type",
            "ref_name",
            "commit_oid",
            name="git_ancestry_repo_ref_commit_idx",
        ),
        Index(
            "git_ancestry_repo_ref_depth_idx", "repo_id", "ref_type", "ref_name", "depth"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    repo_id: Mapped[str] = mapped_column(String(36), nullable=False)
    ref_name: Mapped[str] = mapped_column(String(1024), nullable=False)
    ref_type: Mapped[str] = mapped_column(String(8), default="branch", nullable=False)
    commit_oid: Mapped[str] = mapped_column(String(64), nullable=False)
    depth: Mapped[int] = mapped_column(Integer, nullable=False)

    @validates("ref_type")
    def _validate_ref_type(self, key: str, value: str) -> str:
        return _validate_choice(key, value, REF_TYPES)

    @validates("commit_oid")
    def _validate_commit_oid(self, key: str, value: str) -> str:
        return validate_oid(value)

    @validates("depth")
    def _validate_depth(self, key: str, value: int) -> int:
        if value < 0:
            raise ValueError(f"depth must not be negative, got {value}")
        return value


INDEX_MODELS = (
    GitRef,
    GitCommit,
    GitTreeEntry,
    GitBlob,
    GitCommitFile,
    GitCommitAncestry,
)

SEARCH_TABLE = "code_search"

event.listen(
    Base.metadata,
    "after_create",
    DDL(
        f"CREATE VIRTUAL TABLE IF NOT EXISTS {SEARCH_TABLE} USING fts5("
        "repo_id UNINDEXED, blob_oid UNINDEXED, file_path, content, "
        "tokenize='porter unicode61')"
    ).execute_if(dialect="sqlite"),
)
