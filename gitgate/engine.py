# engine.py -- Access to the backing git repositories
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

"""Access to the backing git repositories.

Plumbing reads (refs, commits, trees, blobs and tree diffs) go through
dulwich; the wire protocol itself is executed by the ``git`` program, for
which :meth:`VersionControlEngine.service_command` builds the command line.
"""

import os
import re
import shlex
import stat
from collections.abc import Sequence
from dataclasses import dataclass

from dulwich.diff_tree import (
    CHANGE_ADD,
    CHANGE_COPY,
    CHANGE_DELETE,
    CHANGE_MODIFY,
    CHANGE_RENAME,
    RenameDetector,
    tree_changes,
)
from dulwich.errors import NotGitRepository
from dulwich.objects import S_ISGITLINK, Blob, Commit, Tree
from dulwich.repo import Repo

from . import log_utils
from .errors import EngineError
from .protocol import SERVICES

logger = log_utils.getLogger(__name__)

BRANCH_PREFIX = b"refs/heads/"
TAG_PREFIX = b"refs/tags/"

_IDENTITY_RE = re.compile(rb"^(.*?)\s*<([^>]*)>\s*$")

_CHANGE_TYPES = {
    CHANGE_ADD: "add",
    CHANGE_COPY: "add",
    CHANGE_MODIFY: "modify",
    CHANGE_DELETE: "delete",
    CHANGE_RENAME: "rename",
}


@dataclass(frozen=True)
class RefInfo:
    name: str
    oid: str
    type: str


@dataclass(frozen=True)
class CommitMeta:
    oid: str
    message: str
    author_name: str
    author_email: str
    author_timestamp: int
    author_timezone: int
    committer_name: str
    committer_email: str
    committer_timestamp: int
    committer_timezone: int
    parent_oids: tuple[str, ...]
    tree_oid: str


@dataclass(frozen=True)
class WalkedTreeEntry:
    parent_path: str
    entry_name: str
    entry_path: str
    entry_type: str
    entry_oid: str
    entry_mode: int


@dataclass(frozen=True)
class WalkedTree:
    root_tree_oid: str
    entries: tuple[WalkedTreeEntry, ...]


@dataclass(frozen=True)
class BlobIndexData:
    content: str | None
    size: int
    is_binary: bool
    is_truncated: bool


@dataclass(frozen=True)
class ChangedFile:
    path: str
    change_type: str


def _decode(value: bytes, encoding: bytes | None = None) -> str:
    codec = encoding.decode("ascii") if encoding else "utf-8"
    try:
        return value.decode(codec, "replace")
    except LookupError:
        return value.decode("utf-8", "replace")


def _decode_path(path: bytes) -> str:
    return path.decode("utf-8", "replace")


def split_identity(identity: bytes, encoding: bytes | None = None) -> tuple[str, str]:
    """Split a ``Name <email>`` identity into its name and email."""
    m = _IDENTITY_RE.match(identity)
    if m is None:
        return _decode(identity, encoding).strip(), ""
    return _decode(m.group(1), encoding), _decode(m.group(2), encoding)


def is_binary(data: bytes, check_size: int) -> bool:
    """Content with a NUL byte in its first check_size bytes is binary."""
    return b"\0" in data[:check_size]


class VersionControlEngine:
    """Read access to one bare repository plus git service commands for it."""

    def __init__(self, path: str, git_command: Sequence[str] = ("git",)) -> None:
        self.path = os.fspath(path)
        self.git_command = tuple(git_command)
        self._repo: Repo | None = None

    @classmethod
    def from_config(cls, path: str, git_executable: str) -> "VersionControlEngine":
        return cls(path, git_command=shlex.split(git_executable))

    @classmethod
    def init_bare(
        cls, path: str, default_branch: str = "main", git_command: Sequence[str] = ("git",)
    ) -> "VersionControlEngine":
        """Create a new bare repository at path."""
        Repo.init_bare(
            path, mkdir=not os.path.exists(path), default_branch=default_branch.encode("utf-8")
        ).close()
        return cls(path, git_command=git_command)

    @property
    def repo(self) -> Repo:
        if self._repo is None:
            try:
                self._repo = Repo(self.path)
            except NotGitRepository as e:
                raise EngineError(f"{self.path} is not a git repository", e) from e
        return self._repo

    def close(self) -> None:
        if self._repo is not None:
            self._repo.close()
            self._repo = None

    def __enter__(self) -> "VersionControlEngine":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.close()

    def service_command(
        self, service: str, stateless: bool = False, advertise_refs: bool = False
    ) -> list[str]:
        """Build the command line that runs a git service on this repository.

        Args:
          service: "upload-pack" or "receive-pack"
          stateless: Whether to run a single stateless-rpc exchange
          advertise_refs: Only advertise refs and exit
        Returns: argv list
        """
        if service not in SERVICES:
            raise ValueError(f"Unsupported service {service!r}")
        argv = [*self.git_command, service]
        if stateless:
            argv.append("--stateless-rpc")
        if advertise_refs:
            argv.append("--advertise-refs")
        argv.append(self.path)
        return argv

    def _get(self, oid: str, kind: type) -> object:
        try:
            obj = self.repo[oid.encode("ascii")]
        except KeyError as e:
            raise EngineError(f"Object {oid} not found in {self.path}", e) from e
        if not isinstance(obj, kind):
            raise EngineError(f"{oid} is not a {kind.type_name.decode('ascii')}")
        return obj

    def _peeled_commit(self, refname: bytes) -> str | None:
        try:
            peeled = self.repo.get_peeled(refname)
            obj = self.repo[peeled]
        except KeyError:
            logger.debug("Unable to resolve %s in %s", refname, self.path)
            return None
        if not isinstance(obj, Commit):
            logger.debug("Skipping %s: does not point at a commit", refname)
            return None
        return obj.id.decode("ascii")

    def list_refs(self) -> list[RefInfo]:
        """List all branches and tags with the commits they point at.

        Annotated tags are peeled to their commit; refs that don't end up at
        a commit are left out.
        """
        refs = []
        for prefix, ref_type in ((BRANCH_PREFIX, "branch"), (TAG_PREFIX, "tag")):
            for name in sorted(self.repo.refs.keys(base=prefix)):
                oid = self._peeled_commit(prefix + name)
                if oid is not None:
                    refs.append(RefInfo(_decode_path(name), oid, ref_type))
        return refs

    def snapshot_refs(self) -> dict[str, str]:
        """Snapshot branches and tags as ``{"<type>:<name>": oid}``."""
        return {f"{ref.type}:{ref.name}": ref.oid for ref in self.list_refs()}

    def resolve_head(self) -> str | None:
        """Return the branch HEAD points to, or the best substitute.

        Falls back to a branch whose tip equals a detached HEAD, then to the
        first branch. Returns None for a repository without branches.
        """
        branches = {
            ref.name: ref.oid for ref in self.list_refs() if ref.type == "branch"
        }
        if not branches:
            return None
        head = self.repo.refs.read_ref(b"HEAD")
        if head is not None and head.startswith(b"ref: " + BRANCH_PREFIX):
            name = _decode_path(head[len(b"ref: " + BRANCH_PREFIX) :].strip())
            if name in branches:
                return name
        elif head is not None:
            detached = head.strip().decode("ascii", "replace")
            for name, oid in sorted(branches.items()):
                if oid == detached:
                    return name
        return sorted(branches)[0]

    def read_commit(self, oid: str) -> CommitMeta:
        commit = self._get(oid, Commit)
        author_name, author_email = split_identity(commit.author, commit.encoding)
        committer_name, committer_email = split_identity(
            commit.committer, commit.encoding
        )
        return CommitMeta(
            oid=oid,
            message=_decode(commit.message, commit.encoding),
            author_name=author_name,
            author_email=author_email,
            author_timestamp=commit.author_time,
            author_timezone=commit.author_timezone,
            committer_name=committer_name,
            committer_email=committer_email,
            committer_timestamp=commit.commit_time,
            committer_timezone=commit.commit_timezone,
            parent_oids=tuple(p.decode("ascii") for p in commit.parents),
            tree_oid=commit.tree.decode("ascii"),
        )

    def commit_parents(self, oid: str) -> list[str]:
        commit = self._get(oid, Commit)
        return [p.decode("ascii") for p in commit.parents]

    def walk_tree(self, commit_oid: str) -> WalkedTree:
        """Flatten the tree of a commit into a list of entries.

        Entries are listed parent before children. Submodule entries are
        skipped, there is no object for them in this repository.
        """
        commit = self._get(commit_oid, Commit)
        entries: list[WalkedTreeEntry] = []
        pending = [(commit.tree, "")]
        while pending:
            tree_id, parent_path = pending.pop()
            tree = self._get(tree_id.decode("ascii"), Tree)
            for entry in tree.iteritems():
                if S_ISGITLINK(entry.mode):
                    continue
                name = _decode_path(entry.path)
                entry_path = f"{parent_path}/{name}" if parent_path else name
                entry_type = "tree" if stat.S_ISDIR(entry.mode) else "blob"
                entries.append(
                    WalkedTreeEntry(
                        parent_path=parent_path,
                        entry_name=name,
                        entry_path=entry_path,
                        entry_type=entry_type,
                        entry_oid=entry.sha.decode("ascii"),
                        entry_mode=entry.mode,
                    )
                )
                if entry_type == "tree":
                    pending.append((entry.sha, entry_path))
        return WalkedTree(commit.tree.decode("ascii"), tuple(entries))

    def read_blob_for_index(
        self, oid: str, max_size: int, binary_check_size: int
    ) -> BlobIndexData:
        """Read a blob for indexing.

        Binary blobs are stored without content; text blobs larger than
        max_size are cut off at max_size bytes and flagged as truncated.
        """
        blob = self._get(oid, Blob)
        data = blob.as_raw_string()
        size = len(data)
        if is_binary(data, binary_check_size):
            return BlobIndexData(None, size, True, False)
        truncated = size > max_size
        if truncated:
            data = data[:max_size]
        return BlobIndexData(data.decode("utf-8", "replace"), size, False, truncated)

    def changed_files(self, parent_oid: str | None, commit_oid: str) -> list[ChangedFile]:
        """List the files changed by a commit relative to parent_oid.

        For a root commit (parent_oid None) every file is an addition.
        Renames are detected and reported under their new path.
        """
        commit = self._get(commit_oid, Commit)
        store = self.repo.object_store
        if parent_oid is None:
            parent_tree = None
            detector = None
        else:
            parent_tree = self._get(parent_oid, Commit).tree
            detector = RenameDetector(store)
        changes: dict[str, str] = {}
        for change in tree_changes(
            store, parent_tree, commit.tree, rename_detector=detector
        ):
            change_type = _CHANGE_TYPES.get(change.type)
            if change_type is None:
                continue
            entry = change.old if change.type == CHANGE_DELETE else change.new
            path = _decode_path(entry.path)
            # A file type change shows up as a delete and an add of one path.
            changes[path] = "modify" if path in changes else change_type
        return [ChangedFile(path, change_type) for path, change_type in changes.items()]

    def walk_ancestry(self, tip_oid: str, max_depth: int | None = None) -> list[str]:
        """Follow first parents from tip_oid.

        Returns: oids ordered [tip, parent, grandparent, ...]; the walk ends
            at the root, at max_depth entries, or at the first commit that
            can't be read.
        """
        chain = []
        current: str | None = tip_oid
        while current is not None and (max_depth is None or len(chain) < max_depth):
            try:
                parents = self.commit_parents(current)
            except EngineError as e:
                logger.warning("Ancestry walk stopped at %s: %s", current, e)
                break
            chain.append(current)
            current = parents[0] if parents else None
        return chain
