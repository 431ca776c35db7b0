# queries.py -- Read access to the repository index
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

"""Read access to the repository index.

These functions answer the questions a browsing front end asks: which refs
exist, the history of a ref, the contents of a directory, the last commit
that touched a path and where a piece of text occurs. They only read rows
written by :mod:`gitgate.indexer` and never touch the repositories on disk.
"""

from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy import case, select, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from . import log_utils
from .models import (
    SEARCH_TABLE,
    GitBlob,
    GitCommit,
    GitCommitAncestry,
    GitCommitFile,
    GitRef,
    GitTreeEntry,
)
from .store import IndexStore

logger = log_utils.getLogger(__name__)

SNIPPET_START = "<mark>"
SNIPPET_END = "</mark>"
SNIPPET_ELLIPSIS = "..."
SNIPPET_TOKENS = 30


@dataclass(frozen=True)
class SearchHit:
    file_path: str
    blob_oid: str
    snippet: str


@dataclass(frozen=True)
class SearchResults:
    hits: list[SearchHit]
    total: int


def list_refs(store: IndexStore, repo_id: str) -> list[GitRef]:
    """List the indexed refs of a repository, branches before tags."""
    with store.session() as session:
        return list(
            session.scalars(
                select(GitRef)
                .where(GitRef.repo_id == repo_id)
                .order_by(GitRef.type, GitRef.name)
            )
        )


def _resolve_ref_type(
    session: Session, repo_id: str, ref_name: str, ref_type: str | None
) -> str:
    """Pick the ref a short name refers to; a branch shadows a tag."""
    if ref_type is not None:
        return ref_type
    types = set(
        session.scalars(
            select(GitRef.type).where(GitRef.repo_id == repo_id, GitRef.name == ref_name)
        )
    )
    return "tag" if types == {"tag"} else "branch"


def commit_log(
    store: IndexStore,
    repo_id: str,
    ref_name: str,
    limit: int = 50,
    offset: int = 0,
    ref_type: str | None = None,
) -> list[GitCommit]:
    """Return the first-parent history of a ref, newest first.

    Args:
      ref_type: "branch" or "tag"; by default a branch named ref_name is
        used if there is one, otherwise the tag
    """
    with store.session() as session:
        ref_type = _resolve_ref_type(session, repo_id, ref_name, ref_type)
        return list(
            session.scalars(
                select(GitCommit)
                .join(
                    GitCommitAncestry,
                    (GitCommitAncestry.repo_id == GitCommit.repo_id)
                    & (GitCommitAncestry.commit_oid == GitCommit.oid),
                )
                .where(
                    GitCommitAncestry.repo_id == repo_id,
                    GitCommitAncestry.ref_type == ref_type,
                    GitCommitAncestry.ref_name == ref_name,
                )
                .order_by(GitCommitAncestry.depth)
                .limit(limit)
                .offset(offset)
            )
        )


def list_tree(
    store: IndexStore, repo_id: str, root_tree_oid: str, path: str = ""
) -> list[GitTreeEntry]:
    """List one directory of an indexed tree, directories first, then by name."""
    path = path.strip("/")
    with store.session() as session:
        return list(
            session.scalars(
                select(GitTreeEntry)
                .where(
                    GitTreeEntry.repo_id == repo_id,
                    GitTreeEntry.root_tree_oid == root_tree_oid,
                    GitTreeEntry.parent_path == path,
                )
                .order_by(
                    case((GitTreeEntry.entry_type == "tree", 0), else_=1),
                    GitTreeEntry.entry_name,
                )
            )
        )


def list_tree_at_commit(
    store: IndexStore, repo_id: str, commit_oid: str, path: str = ""
) -> list[GitTreeEntry]:
    """List one directory of the tree of an indexed commit.

    Returns: The entries, or an empty list if the commit isn't indexed
    """
    with store.session() as session:
        tree_oid = session.scalars(
            select(GitCommit.tree_oid).where(
                GitCommit.repo_id == repo_id, GitCommit.oid == commit_oid
            )
        ).first()
    if tree_oid is None:
        return []
    return list_tree(store, repo_id, tree_oid, path)


def get_blob(store: IndexStore, repo_id: str, oid: str) -> GitBlob | None:
    with store.session() as session:
        return session.scalars(
            select(GitBlob).where(GitBlob.repo_id == repo_id, GitBlob.oid == oid)
        ).first()


def last_commits_for_paths(
    store: IndexStore,
    repo_id: str,
    ref_name: str,
    paths: Sequence[str],
    ref_type: str | None = None,
) -> dict[str, GitCommit]:
    """Find the most recent commit on a ref's first-parent chain touching each path.

    Paths that no indexed commit on the chain touches are absent from the
    result. ref_type is resolved as in :func:`commit_log`.
    """
    if not paths:
        return {}
    found: dict[str, GitCommit] = {}
    with store.session() as session:
        ref_type = _resolve_ref_type(session, repo_id, ref_name, ref_type)
        stmt = (
            select(GitCommitFile.file_path, GitCommit)
            .join(
                GitCommitAncestry,
                (GitCommitAncestry.repo_id == GitCommitFile.repo_id)
                & (GitCommitAncestry.commit_oid == GitCommitFile.commit_oid)
                & (GitCommitAncestry.ref_type == ref_type)
                & (GitCommitAncestry.ref_name == ref_name),
            )
            .join(
                GitCommit,
                (GitCommit.repo_id == GitCommitFile.repo_id)
                & (GitCommit.oid == GitCommitFile.commit_oid),
            )
            .where(
                GitCommitFile.repo_id == repo_id,
                GitCommitFile.file_path.in_(list(paths)),
            )
            .order_by(GitCommitAncestry.depth)
        )
        for file_path, commit in session.execute(stmt):
            found.setdefault(file_path, commit)
    return found


def search_code(
    store: IndexStore,
    repo_id: str,
    query: str,
    limit: int = 20,
    offset: int = 0,
    ext: str | None = None,
) -> SearchResults:
    """Full-text search over the indexed blobs of a repository.

    Args:
      query: FTS5 query expression
      ext: Only match files with this extension (without the dot)
    Returns: The hits on the requested page, ranked by relevance, and the
        total number of hits. A query FTS5 can't parse matches nothing.
    """
    query = query.strip()
    if not query or not store.supports_search:
        return SearchResults([], 0)
    where = f"repo_id = :repo_id AND {SEARCH_TABLE} MATCH :query"
    params: dict[str, object] = {"repo_id": repo_id, "query": query}
    if ext:
        where += " AND file_path LIKE :pattern"
        params["pattern"] = "%." + ext.lstrip(".")
    hits_sql = text(
        f"SELECT file_path, blob_oid, "
        f"snippet({SEARCH_TABLE}, 3, :start, :end, :ellipsis, :tokens) AS snippet "
        f"FROM {SEARCH_TABLE} WHERE {where} "
        "ORDER BY rank LIMIT :limit OFFSET :offset"
    )
    total_sql = text(f"SELECT COUNT(*) FROM {SEARCH_TABLE} WHERE {where}")
    try:
        with store.session() as session:
            rows = session.execute(
                hits_sql,
                {
                    **params,
                    "start": SNIPPET_START,
                    "end": SNIPPET_END,
                    "ellipsis": SNIPPET_ELLIPSIS,
                    "tokens": SNIPPET_TOKENS,
                    "limit": limit,
                    "offset": offset,
                },
            ).all()
            total = session.execute(total_sql, params).scalar_one()
    except OperationalError as e:
        logger.debug("Search for %r in %s failed: %s", query, repo_id, e)
        return SearchResults([], 0)
    return SearchResults(
        [SearchHit(row.file_path, row.blob_oid, row.snippet) for row in rows], total
    )
