# utils.py -- utility functions for gitgate tests
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

"""Utility functions common to gitgate tests."""

import os
import shlex
import shutil
import sys

from dulwich.index import commit_tree
from dulwich.objects import Blob, Commit, Tag
from dulwich.repo import Repo

from gitgate.identity import IdentityProvider
from gitgate.models import Repository, User
from gitgate.store import IndexStore

F = 0o100644

DEFAULT_TIME = 1262304000  # 2010-01-01

AUTHOR = b"Test Author <test@nodomain.com>"

git_missing = shutil.which("git") is None


def make_store() -> IndexStore:
    """Create an empty in-memory store with all tables."""
    store = IndexStore("sqlite://")
    store.create_all()
    return store


def make_bare_repo(path: str) -> Repo:
    """Create a bare repository at path; HEAD points at main."""
    repo = Repo.init_bare(path, mkdir=not os.path.exists(path))
    repo.refs.set_symbolic_ref(b"HEAD", b"refs/heads/main")
    return repo


def make_commit(
    repo: Repo,
    files: dict[str, bytes],
    parents: tuple[str, ...] = (),
    message: str = "Test message.",
    commit_time: int = DEFAULT_TIME,
    author: bytes = AUTHOR,
) -> str:
    """Add a commit with exactly the given files to repo.

    Returns: Hex oid of the commit
    """
    blobs = []
    for path, data in files.items():
        blob = Blob.from_string(data)
        repo.object_store.add_object(blob)
        blobs.append((path.encode("utf-8"), blob.id, F))
    commit = Commit()
    commit.tree = commit_tree(repo.object_store, blobs)
    commit.parents = [p.encode("ascii") for p in parents]
    commit.author = commit.committer = author
    commit.author_time = commit.commit_time = commit_time
    commit.author_timezone = commit.commit_timezone = 0
    commit.message = message.encode("utf-8")
    repo.object_store.add_object(commit)
    return commit.id.decode("ascii")


def make_linear_history(
    repo: Repo, contents: list[dict[str, bytes]], start: str | None = None
) -> list[str]:
    """Add a chain of commits, each the only parent of the next.

    Returns: Commit oids, oldest first
    """
    oids: list[str] = []
    parent = start
    for i, files in enumerate(contents):
        parent = make_commit(
            repo,
            files,
            parents=(parent,) if parent else (),
            message=f"Commit {i}",
            commit_time=DEFAULT_TIME + 100 * i,
        )
        oids.append(parent)
    return oids


def set_branch(repo: Repo, name: str, oid: str) -> None:
    repo.refs[b"refs/heads/" + name.encode("utf-8")] = oid.encode("ascii")


def make_annotated_tag(repo: Repo, name: str, oid: str) -> str:
    tag = Tag()
    tag.name = name.encode("utf-8")
    tag.object = (Commit, oid.encode("ascii"))
    tag.tagger = AUTHOR
    tag.tag_time = DEFAULT_TIME
    tag.tag_timezone = 0
    tag.message = b"Tag " + name.encode("utf-8")
    repo.object_store.add_object(tag)
    repo.refs[b"refs/tags/" + name.encode("utf-8")] = tag.id
    return tag.id.decode("ascii")


def make_user_and_repo(
    store: IndexStore,
    disk_path: str,
    username: str = "alice",
    name: str = "project",
    is_public: bool = True,
) -> tuple[User, Repository]:
    identity = IdentityProvider(store)
    user = identity.add_user(username)
    repo = identity.add_repository(user.id, name, disk_path, is_public=is_public)
    return user, repo


def fake_git_command(script: str) -> str:
    """A git_executable setting that runs a Python script instead of git.

    The script sees the service arguments in sys.argv[1:].
    """
    return shlex.join([sys.executable, "-c", script])


# Stands in for git: echoes its arguments, its input and GIT_PROTOCOL. A
# receive-pack whose input is a commit id moves main to that commit.
FAKE_GIT = """
import os, sys
args = sys.argv[1:]
service, path = args[0], args[-1]
out = sys.stdout.buffer
out.write(" ".join(args[:-1]).encode() + b"\\n")
if "--advertise-refs" not in args:
    data = sys.stdin.buffer.read()
    out.write(data)
    if service == "receive-pack" and len(data.strip()) == 40:
        with open(os.path.join(path, "refs", "heads", "main"), "wb") as f:
            f.write(data.strip() + b"\\n")
out.write(b"protocol=" + os.environ.get("GIT_PROTOCOL", "").encode() + b"\\n")
"""
