# indexer.py -- Incremental indexing of repository mutations
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

"""Incremental indexing of repository mutations.

Every change to a ref is applied to the index by :meth:`Indexer.index_ref`:

1. A deleted ref loses its ref row and its ancestry rows. Commits, trees and
   blobs stay, other refs may still reach them.
2. Otherwise the commits reachable from the new tip are walked breadth
   first. The walk stops at commits that are already indexed, assuming
   their history was indexed along with them.
3. The new commits are indexed oldest first: commit metadata, the tree
   (once per distinct root tree), new blobs and their search documents,
   and the files changed relative to the first parent.
4. The ref row is upserted and the first-parent ancestry of the ref is
   rebuilt from scratch.

All writes ignore unique-constraint conflicts, so applying the same change
twice, or two overlapping changes concurrently, never duplicates rows.
Runs for the same (repository, ref) are serialized; a full reindex holds the
whole repository.
"""

import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Iterator, Sequence
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from contextlib import contextmanager

from sqlalchemy import delete, select

from . import log_utils
from .config import GatewayConfig
from .engine import (
    ChangedFile,
    CommitMeta,
    VersionControlEngine,
    WalkedTreeEntry,
)
from .errors import EngineError
from .models import (
    GitBlob,
    GitCommit,
    GitCommitAncestry,
    GitCommitFile,
    GitRef,
    GitTreeEntry,
    Repository,
    utcnow,
)
from .protocol import ZERO_SHA
from .refs import RefChange, diff_ref_snapshots
from .store import IndexStore

logger = log_utils.getLogger(__name__)

EngineFactory = Callable[[str], VersionControlEngine]


def expand_changed_paths(changed: Sequence[ChangedFile]) -> list[tuple[str, str]]:
    """Add a "modify" entry for every ancestor directory of each changed path.

    Returns: (path, change_type) pairs; files first in their original order,
        each directory listed once right after the first file below it.
    """
    entries = []
    seen_dirs: set[str] = set()
    for changed_file in changed:
        entries.append((changed_file.path, changed_file.change_type))
        parts = changed_file.path.split("/")
        for i in range(1, len(parts)):
            dir_path = "/".join(parts[:i])
            if dir_path not in seen_dirs:
                seen_dirs.add(dir_path)
                entries.append((dir_path, "modify"))
    return entries


class RefLocks:
    """Locks serializing index runs of one ref, created on first use.

    Runs of different refs proceed concurrently. A hold on a whole
    repository waits for the runs of that repository to finish and keeps
    new ones out until it is released.
    """

    def __init__(self) -> None:
        self._guard = threading.Condition()
        self._locks: dict[tuple[str, str, str], threading.Lock] = {}
        self._running: dict[str, int] = {}
        self._exclusive: set[str] = set()

    @contextmanager
    def hold(self, repo_id: str, ref_type: str, ref_name: str) -> Iterator[None]:
        with self._guard:
            while repo_id in self._exclusive:
                self._guard.wait()
            self._running[repo_id] = self._running.get(repo_id, 0) + 1
            lock = self._locks.setdefault(
                (repo_id, ref_type, ref_name), threading.Lock()
            )
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._running[repo_id] -= 1
                if not self._running[repo_id]:
                    del self._running[repo_id]
                self._guard.notify_all()

    @contextmanager
    def hold_repository(self, repo_id: str) -> Iterator[None]:
        with self._guard:
            while repo_id in self._exclusive or self._running.get(repo_id):
                self._guard.wait()
            self._exclusive.add(repo_id)
        try:
            yield
        finally:
            with self._guard:
                self._exclusive.discard(repo_id)
                self._guard.notify_all()


class Indexer:
    """Applies ref changes of repositories to an IndexStore."""

    def __init__(
        self,
        store: IndexStore,
        config: GatewayConfig | None = None,
        engine_factory: EngineFactory | None = None,
    ) -> None:
        self.store = store
        self.config = config or GatewayConfig()
        if engine_factory is None:
            engine_factory = self._default_engine
        self._engine_factory = engine_factory
        self._locks = RefLocks()

    def _default_engine(self, repo_path: str) -> VersionControlEngine:
        return VersionControlEngine.from_config(repo_path, self.config.git_executable)

    def index_ref(
        self,
        repo_id: str,
        repo_path: str,
        ref_name: str,
        ref_type: str,
        old_oid: str | None,
        new_oid: str | None,
    ) -> None:
        """Bring the index up to date with one ref change.

        A branch and a tag with the same short name are separate refs.

        Args:
          repo_id: Id of the repository
          repo_path: Path of the bare repository on disk
          ref_name: Short name of the ref, e.g. "main"
          ref_type: "branch" or "tag"
          old_oid: Previous commit of the ref; informational only
          new_oid: New commit of the ref; None or ZERO_SHA for a deletion
        """
        with self._locks.hold(repo_id, ref_type, ref_name):
            self._apply_ref(repo_id, repo_path, ref_name, ref_type, old_oid, new_oid)

    def _apply_ref(
        self,
        repo_id: str,
        repo_path: str,
        ref_name: str,
        ref_type: str,
        old_oid: str | None,
        new_oid: str | None,
    ) -> None:
        if new_oid is None or new_oid == ZERO_SHA:
            logger.info(
                "Removing %s %s of %s from the index", ref_type, ref_name, repo_id
            )
            self._delete_ref(repo_id, ref_name, ref_type)
            return

        with self._engine_factory(repo_path) as engine:
            new_commits = self._find_new_commits(engine, repo_id, new_oid)
            logger.info(
                "Indexing %s %s of %s: %s -> %s, %d new commits",
                ref_type,
                ref_name,
                repo_id,
                old_oid or "(none)",
                new_oid,
                len(new_commits),
            )
            for oid in reversed(new_commits):
                self.index_commit(engine, repo_id, oid)
            self._upsert_ref(repo_id, ref_name, ref_type, new_oid)
            self.rebuild_ancestry(engine, repo_id, ref_name, new_oid, ref_type)

    def _commit_indexed(self, repo_id: str, oid: str) -> bool:
        with self.store.session() as session:
            return (
                session.scalars(
                    select(GitCommit.id)
                    .where(GitCommit.repo_id == repo_id, GitCommit.oid == oid)
                    .limit(1)
                ).first()
                is not None
            )

    def _find_new_commits(
        self, engine: VersionControlEngine, repo_id: str, tip_oid: str
    ) -> list[str]:
        """Walk back from tip_oid to the commits that are already indexed.

        Returns: oids of the commits not yet indexed, in breadth-first order
            from the tip.
        """
        new_commits = []
        visited: set[str] = set()
        queue = deque([tip_oid])
        while queue:
            oid = queue.popleft()
            if oid in visited:
                continue
            visited.add(oid)
            if self._commit_indexed(repo_id, oid):
                continue
            try:
                parents = engine.commit_parents(oid)
            except EngineError as e:
                logger.warning("Not indexing %s and its history: %s", oid, e)
                continue
            new_commits.append(oid)
            queue.extend(p for p in parents if p not in visited)
        return new_commits

    def index_commit(
        self, engine: VersionControlEngine, repo_id: str, oid: str
    ) -> None:
        """Index one commit: metadata, tree, new blobs and changed files.

        Everything is read from the repository before the rows are written.
        New blobs are stored first; the tree entries, changed files and the
        commit row follow in a single transaction, so an indexed commit
        always has its tree.
        """
        if self._commit_indexed(repo_id, oid):
            return
        meta = engine.read_commit(oid)
        entries: Sequence[WalkedTreeEntry] = ()
        if not self._tree_indexed(repo_id, meta.tree_oid):
            entries = engine.walk_tree(oid).entries
            self._index_blobs(engine, repo_id, entries)
        parent_oid = meta.parent_oids[0] if meta.parent_oids else None
        try:
            changed = engine.changed_files(parent_oid, oid)
        except EngineError as e:
            logger.warning("Unable to list files changed by %s: %s", oid, e)
            changed = []

        tree_rows = [
            GitTreeEntry(
                repo_id=repo_id,
                root_tree_oid=meta.tree_oid,
                parent_path=entry.parent_path,
                entry_name=entry.entry_name,
                entry_path=entry.entry_path,
                entry_type=entry.entry_type,
                entry_oid=entry.entry_oid,
                entry_mode=entry.entry_mode,
            )
            for entry in entries
        ]
        file_rows = [
            GitCommitFile(
                repo_id=repo_id, commit_oid=oid, file_path=path, change_type=change_type
            )
            for path, change_type in expand_changed_paths(changed)
        ]
        with self.store.session(write=True) as session:
            self.store.insert_ignore(session, tree_rows, self.config.batch_size)
            self.store.insert_ignore(session, file_rows, self.config.batch_size)
            self.store.insert_ignore(session, [self._commit_row(repo_id, meta)])

    @staticmethod
    def _commit_row(repo_id: str, meta: CommitMeta) -> GitCommit:
        return GitCommit(
            repo_id=repo_id,
            oid=meta.oid,
            message=meta.message,
            author_name=meta.author_name,
            author_email=meta.author_email,
            author_timestamp=meta.author_timestamp,
            author_timezone=meta.author_timezone,
            committer_name=meta.committer_name,
            committer_email=meta.committer_email,
            committer_timestamp=meta.committer_timestamp,
            committer_timezone=meta.committer_timezone,
            parent_oids=list(meta.parent_oids),
            tree_oid=meta.tree_oid,
        )

    def _tree_indexed(self, repo_id: str, tree_oid: str) -> bool:
        with self.store.session() as session:
            return (
                session.scalars(
                    select(GitTreeEntry.id)
                    .where(
                        GitTreeEntry.repo_id == repo_id,
                        GitTreeEntry.root_tree_oid == tree_oid,
                    )
                    .limit(1)
                ).first()
                is not None
            )

    def _existing_blobs(self, repo_id: str, oids: Sequence[str]) -> set[str]:
        existing: set[str] = set()
        step = self.config.batch_size
        with self.store.session() as session:
            for start in range(0, len(oids), step):
                existing.update(
                    session.scalars(
                        select(GitBlob.oid).where(
                            GitBlob.repo_id == repo_id,
                            GitBlob.oid.in_(oids[start : start + step]),
                        )
                    )
                )
        return existing

    def _index_blobs(
        self,
        engine: VersionControlEngine,
        repo_id: str,
        entries: Sequence[WalkedTreeEntry],
    ) -> None:
        """Store the blobs of a tree that aren't indexed yet, a batch at a time."""
        blob_entries = [e for e in entries if e.entry_type == "blob"]
        seen = self._existing_blobs(
            repo_id, sorted({e.entry_oid for e in blob_entries})
        )
        pending = []
        for entry in blob_entries:
            if entry.entry_oid in seen:
                continue
            seen.add(entry.entry_oid)
            pending.append(entry)

        step = self.config.batch_size
        for start in range(0, len(pending), step):
            batch = [
                (
                    entry,
                    engine.read_blob_for_index(
                        entry.entry_oid,
                        max_size=self.config.max_blob_size,
                        binary_check_size=self.config.binary_check_size,
                    ),
                )
                for entry in pending[start : start + step]
            ]
            with self.store.session(write=True) as session:
                self.store.insert_ignore(
                    session,
                    [
                        GitBlob(
                            repo_id=repo_id,
                            oid=entry.entry_oid,
                            content=data.content,
                            size=data.size,
                            is_binary=data.is_binary,
                            is_truncated=data.is_truncated,
                        )
                        for entry, data in batch
                    ],
                )
                for entry, data in batch:
                    if data.content is not None and not data.is_binary:
                        self.store.add_search_document(
                            session, repo_id, entry.entry_oid, entry.entry_path, data.content
                        )

    def rebuild_ancestry(
        self,
        engine: VersionControlEngine,
        repo_id: str,
        ref_name: str,
        tip_oid: str,
        ref_type: str = "branch",
    ) -> None:
        """Replace the ancestry rows of a ref with the first-parent chain of tip_oid."""
        chain = engine.walk_ancestry(tip_oid)
        rows = [
            GitCommitAncestry(
                repo_id=repo_id,
                ref_name=ref_name,
                ref_type=ref_type,
                commit_oid=oid,
                depth=depth,
            )
            for depth, oid in enumerate(chain)
        ]
        with self.store.session(write=True) as session:
            session.execute(
                delete(GitCommitAncestry).where(
                    GitCommitAncestry.repo_id == repo_id,
                    GitCommitAncestry.ref_type == ref_type,
                    GitCommitAncestry.ref_name == ref_name,
                )
            )
            self.store.insert_ignore(session, rows, self.config.batch_size)

    def _upsert_ref(
        self, repo_id: str, ref_name: str, ref_type: str, commit_oid: str
    ) -> None:
        with self.store.session(write=True) as session:
            ref = session.scalars(
                select(GitRef)
                .where(
                    GitRef.repo_id == repo_id,
                    GitRef.type == ref_type,
                    GitRef.name == ref_name,
                )
                .limit(1)
            ).first()
            if ref is None:
                session.add(
                    GitRef(
                        repo_id=repo_id,
                        name=ref_name,
                        type=ref_type,
                        commit_oid=commit_oid,
                        updated_at=utcnow(),
                    )
                )
            else:
                ref.commit_oid = commit_oid
                ref.updated_at = utcnow()

    def _delete_ref(self, repo_id: str, ref_name: str, ref_type: str) -> None:
        with self.store.session(write=True) as session:
            session.execute(
                delete(GitRef).where(
                    GitRef.repo_id == repo_id,
                    GitRef.type == ref_type,
                    GitRef.name == ref_name,
                )
            )
            session.execute(
                delete(GitCommitAncestry).where(
                    GitCommitAncestry.repo_id == repo_id,
                    GitCommitAncestry.ref_type == ref_type,
                    GitCommitAncestry.ref_name == ref_name,
                )
            )

    def full_reindex(self, repo_id: str, repo_path: str) -> int:
        """Drop everything indexed for a repository and index all its refs again.

        Index runs of the repository's refs wait until the reindex is done.

        Returns: Number of refs indexed
        """
        logger.info("Reindexing %s from %s", repo_id, repo_path)
        with self._locks.hold_repository(repo_id):
            with self.store.session(write=True) as session:
                self.store.clear_repository(session, repo_id)
            with self._engine_factory(repo_path) as engine:
                refs = engine.list_refs()
            for ref in refs:
                self._apply_ref(repo_id, repo_path, ref.name, ref.type, None, ref.oid)
        return len(refs)

    def has_indexed_refs(self, repo_id: str) -> bool:
        with self.store.session() as session:
            return (
                session.scalars(
                    select(GitRef.id).where(GitRef.repo_id == repo_id).limit(1)
                ).first()
                is not None
            )

    def backfill(self, repositories: Iterable[Repository]) -> list[str]:
        """Index every repository that has refs on disk but none in the index.

        A failure to index one repository is logged and does not stop the
        others.

        Returns: Ids of the repositories that were indexed
        """
        indexed = []
        for repo in repositories:
            if self.has_indexed_refs(repo.id):
                continue
            try:
                with self._engine_factory(repo.disk_path) as engine:
                    if not engine.list_refs():
                        continue
                logger.info("Backfilling index for %s", repo.name)
                self.full_reindex(repo.id, repo.disk_path)
            except Exception:
                logger.exception("Failed to index %s", repo.name)
                continue
            logger.info("Finished indexing %s", repo.name)
            indexed.append(repo.id)
        return indexed


class IndexScheduler:
    """Runs indexing in the background after a repository was mutated.

    The transports take a snapshot of the refs before they let a client
    mutate a repository, and schedule indexing once the mutating process
    has exited. The after-snapshot is taken settle_delay seconds later.
    """

    def __init__(
        self,
        indexer: Indexer,
        settle_delay: float | None = None,
        executor: Executor | None = None,
    ) -> None:
        self.indexer = indexer
        if settle_delay is None:
            settle_delay = indexer.config.settle_delay
        self.settle_delay = settle_delay
        self._own_executor = executor is None
        if executor is None:
            executor = ThreadPoolExecutor(
                max_workers=indexer.config.index_workers,
                thread_name_prefix="gitgate-index",
            )
        self._executor = executor

    def snapshot(self, repo_path: str) -> dict[str, str] | None:
        """Snapshot the refs of a repository, or None if it can't be read."""
        try:
            with self.indexer._engine_factory(repo_path) as engine:
                return engine.snapshot_refs()
        except EngineError as e:
            logger.warning("Unable to snapshot refs of %s: %s", repo_path, e)
            return None

    def schedule(
        self, repo_id: str, repo_path: str, before: dict[str, str]
    ) -> "Future[list[RefChange]]":
        """Index the ref changes made since the before snapshot was taken."""
        future = self._executor.submit(self.apply, repo_id, repo_path, before)
        future.add_done_callback(self._report)
        return future

    def apply(
        self, repo_id: str, repo_path: str, before: dict[str, str]
    ) -> list[RefChange]:
        if self.settle_delay:
            time.sleep(self.settle_delay)
        after = self.snapshot(repo_path)
        if after is None:
            return []
        changes = diff_ref_snapshots(before, after)
        for change in changes:
            try:
                self.indexer.index_ref(
                    repo_id,
                    repo_path,
                    change.name,
                    change.type,
                    change.old_oid,
                    change.new_oid,
                )
            except Exception:
                logger.exception(
                    "Failed to index ref %s for repo %s", change.name, repo_id
                )
        return changes

    @staticmethod
    def _report(future: "Future[list[RefChange]]") -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Indexing run failed: %s", exc, exc_info=exc)

    def shutdown(self, wait: bool = True) -> None:
        if self._own_executor:
            self._executor.shutdown(wait=wait)
