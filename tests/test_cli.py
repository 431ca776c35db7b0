# test_cli.py -- tests for the command line interface
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

"""Tests for gitgate.cli."""

import asyncio
import io
import os
from contextlib import redirect_stdout
from unittest.mock import patch

from dulwich.repo import Repo
from sqlalchemy import inspect, select

from gitgate import cli
from gitgate.config import GatewayConfig
from gitgate.identity import IdentityProvider
from gitgate.models import Collaborator, SSHKey
from gitgate.queries import list_refs
from gitgate.ssh import load_or_generate_host_key
from gitgate.store import IndexStore

from . import TestCase
from .test_identity import make_ed25519_key
from .utils import make_commit, set_branch


class GitGateCliTestCase(TestCase):
    """Base class for CLI tests."""

    def setUp(self) -> None:
        super().setUp()
        self.data_dir = self.make_temp_dir()
        patcher = patch("gitgate.cli.log_utils.default_logging_config")
        self.logging_config = patcher.start()
        self.addCleanup(patcher.stop)

    def _run_cli(self, *args: str, data_dir: bool = True) -> tuple[int | None, str]:
        argv = ["--data-dir", self.data_dir, *args] if data_dir else list(args)
        stdout = io.StringIO()
        with redirect_stdout(stdout):
            result = cli.main(argv)
        return result, stdout.getvalue()

    def open_store(self) -> IndexStore:
        store = IndexStore(GatewayConfig(data_dir=self.data_dir).resolved_database_url)
        self.addCleanup(store.dispose)
        return store

    def setup_repo(self, owner: str = "alice", name: str = "project") -> str:
        self._run_cli("init-db")
        self._run_cli("add-user", owner)
        result, stdout = self._run_cli("create-repo", f"{owner}/{name}")
        self.assertIsNone(result)
        return stdout.strip()

    def push(self) -> str:
        repo = IdentityProvider(self.open_store()).resolve_repository("alice", "project")
        with Repo(repo.disk_path) as disk_repo:
            oid = make_commit(disk_repo, {"README": b"hello\n"})
            set_branch(disk_repo, "main", oid)
        return oid


class MainTest(GitGateCliTestCase):
    def test_unknown_command(self) -> None:
        with self.assertLogs(level="CRITICAL"):
            result, _ = self._run_cli("frobnicate")
        self.assertEqual(1, result)

    def test_config_file(self) -> None:
        other_dir = self.make_temp_dir()
        config_path = os.path.join(self.make_temp_dir(), "gitgate.conf")
        with open(config_path, "w") as f:
            f.write(f"[core]\n\tdatadir = {other_dir}\n")
        result, _ = self._run_cli("--config", config_path, "init-db", data_dir=False)
        self.assertIsNone(result)
        self.assertTrue(os.path.exists(os.path.join(other_dir, "gitgate.db")))

    def test_missing_config_file(self) -> None:
        with self.assertLogs(level="CRITICAL"):
            result, _ = self._run_cli(
                "--config", os.path.join(self.data_dir, "missing.conf"), "init-db"
            )
        self.assertEqual(1, result)

    def test_log_settings(self) -> None:
        log_file = os.path.join(self.data_dir, "gitgate.log")
        config_path = os.path.join(self.make_temp_dir(), "gitgate.conf")
        with open(config_path, "w") as f:
            f.write(f"[core]\n\tloglevel = WARNING\n\tlogfile = {log_file}\n")
        result, _ = self._run_cli("--config", config_path, "init-db")
        self.assertIsNone(result)
        self.logging_config.assert_called_once_with("WARNING", log_file)

    def test_log_level_option(self) -> None:
        result, _ = self._run_cli("--log-level", "debug", "init-db")
        self.assertIsNone(result)
        self.logging_config.assert_called_once_with("debug", None)

    def test_invalid_log_level(self) -> None:
        with self.assertLogs(level="CRITICAL"):
            result, _ = self._run_cli("--log-level", "chatty", "init-db")
        self.assertEqual(1, result)


class InitDbCommandTest(GitGateCliTestCase):
    def test_init_db(self) -> None:
        result, _ = self._run_cli("init-db")
        self.assertIsNone(result)
        self.assertTrue(os.path.exists(os.path.join(self.data_dir, "gitgate.db")))
        tables = inspect(self.open_store().engine).get_table_names()
        for table in ("users", "repositories", "git_commits", "code_search"):
            self.assertIn(table, tables)

    def test_init_db_twice(self) -> None:
        self._run_cli("init-db")
        result, _ = self._run_cli("init-db")
        self.assertIsNone(result)


class UserCommandTest(GitGateCliTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._run_cli("init-db")

    def test_add_user(self) -> None:
        result, stdout = self._run_cli("add-user", "alice")
        self.assertIsNone(result)
        user = IdentityProvider(self.open_store()).find_user_by_username("alice")
        self.assertEqual(user.id, stdout.strip())

    def test_add_user_twice(self) -> None:
        self._run_cli("add-user", "alice")
        with self.assertLogs(level="CRITICAL"):
            result, _ = self._run_cli("add-user", "alice")
        self.assertEqual(1, result)

    def test_add_key(self) -> None:
        self._run_cli("add-user", "alice")
        line, blob = make_ed25519_key(7, comment="alice@laptop")
        keyfile = os.path.join(self.data_dir, "id_ed25519.pub")
        with open(keyfile, "w") as f:
            f.write(line + "\n")
        result, stdout = self._run_cli("add-key", "alice", keyfile)
        self.assertIsNone(result)
        self.assertTrue(stdout.startswith("SHA256:"))
        store = self.open_store()
        with store.session() as session:
            key = session.scalars(select(SSHKey)).one()
        self.assertEqual("alice@laptop", key.title)
        user = IdentityProvider(store).find_user_by_public_key(blob)
        self.assertEqual("alice", user.username)

    def test_add_key_from_stdin(self) -> None:
        self._run_cli("add-user", "alice")
        line, _ = make_ed25519_key(8)
        with patch("sys.stdin", io.StringIO(line)):
            result, _ = self._run_cli("add-key", "alice", "-", "--title", "work")
        self.assertIsNone(result)
        with self.open_store().session() as session:
            self.assertEqual("work", session.scalars(select(SSHKey.title)).one())

    def test_add_key_unknown_user(self) -> None:
        keyfile = os.path.join(self.data_dir, "key.pub")
        with open(keyfile, "w") as f:
            f.write(make_ed25519_key(9)[0])
        with self.assertLogs("gitgate.cli", "ERROR"):
            result, _ = self._run_cli("add-key", "nobody", keyfile)
        self.assertEqual(1, result)

    def test_add_invalid_key(self) -> None:
        self._run_cli("add-user", "alice")
        keyfile = os.path.join(self.data_dir, "key.pub")
        with open(keyfile, "w") as f:
            f.write("ssh-foo AAAA alice@laptop\n")
        with self.assertLogs(level="CRITICAL"):
            result, _ = self._run_cli("add-key", "alice", keyfile)
        self.assertEqual(1, result)

    def test_create_token(self) -> None:
        self._run_cli("add-user", "alice")
        result, stdout = self._run_cli("create-token", "alice", "--name", "ci")
        self.assertIsNone(result)
        token = stdout.strip()
        self.assertTrue(token.startswith("gitgate_"))
        user = IdentityProvider(self.open_store()).authenticate("alice", token)
        self.assertEqual("alice", user.username)

    def test_create_token_unknown_user(self) -> None:
        with self.assertLogs("gitgate.cli", "ERROR"):
            result, _ = self._run_cli("create-token", "nobody")
        self.assertEqual(1, result)


class RepositoryCommandTest(GitGateCliTestCase):
    def test_create_repo(self) -> None:
        repo_id = self.setup_repo()
        repo = IdentityProvider(self.open_store()).resolve_repository("alice", "project")
        self.assertEqual(repo_id, repo.id)
        self.assertTrue(repo.is_public)
        self.assertEqual(
            os.path.join(self.data_dir, "repos", "alice", "project.git"), repo.disk_path
        )
        self.assertTrue(os.path.exists(os.path.join(repo.disk_path, "HEAD")))

    def test_create_private_repo(self) -> None:
        self._run_cli("init-db")
        self._run_cli("add-user", "alice")
        result, _ = self._run_cli("create-repo", "alice/secret.git", "--private")
        self.assertIsNone(result)
        repo = IdentityProvider(self.open_store()).resolve_repository("alice", "secret")
        self.assertFalse(repo.is_public)

    def test_create_repo_twice(self) -> None:
        self.setup_repo()
        with self.assertLogs("gitgate.cli", "ERROR"):
            result, _ = self._run_cli("create-repo", "alice/project")
        self.assertEqual(1, result)

    def test_create_repo_unknown_owner(self) -> None:
        self._run_cli("init-db")
        with self.assertLogs("gitgate.cli", "ERROR"):
            result, _ = self._run_cli("create-repo", "nobody/project")
        self.assertEqual(1, result)

    def test_create_repo_invalid_name(self) -> None:
        with patch("sys.stderr", io.StringIO()):
            for name in ("project", "alice/", "a/b/c"):
                self.assertRaises(SystemExit, self._run_cli, "create-repo", name)

    def test_add_collaborator(self) -> None:
        repo_id = self.setup_repo()
        self._run_cli("add-user", "bob")
        result, _ = self._run_cli("add-collaborator", "alice/project", "bob", "write")
        self.assertIsNone(result)
        with self.open_store().session() as session:
            collaborator = session.scalars(select(Collaborator)).one()
        self.assertEqual(repo_id, collaborator.repo_id)
        self.assertEqual("write", collaborator.permission)

    def test_add_collaborator_unknown(self) -> None:
        self.setup_repo()
        with self.assertLogs("gitgate.cli", "ERROR"):
            result, _ = self._run_cli("add-collaborator", "alice/project", "bob", "read")
        self.assertEqual(1, result)
        with self.assertLogs("gitgate.cli", "ERROR"):
            result, _ = self._run_cli("add-collaborator", "alice/other", "alice", "read")
        self.assertEqual(1, result)


class IndexCommandTest(GitGateCliTestCase):
    def test_reindex(self) -> None:
        repo_id = self.setup_repo()
        oid = self.push()
        result, _ = self._run_cli("reindex", "alice/project")
        self.assertIsNone(result)
        self.assertEqual(
            [("main", oid)],
            [(r.name, r.commit_oid) for r in list_refs(self.open_store(), repo_id)],
        )

    def test_reindex_unknown(self) -> None:
        self._run_cli("init-db")
        with self.assertLogs("gitgate.cli", "ERROR"):
            result, _ = self._run_cli("reindex", "alice/project")
        self.assertEqual(1, result)

    def test_backfill(self) -> None:
        repo_id = self.setup_repo()
        oid = self.push()
        with self.assertLogs("gitgate.cli", "INFO") as cm:
            result, _ = self._run_cli("backfill")
        self.assertIsNone(result)
        self.assertIn("Indexed 1 of 1 repositories", cm.output[-1])
        self.assertEqual(
            [("main", oid)],
            [(r.name, r.commit_oid) for r in list_refs(self.open_store(), repo_id)],
        )


class ServeCommandTest(GitGateCliTestCase):
    def test_serve_starts_and_stops(self) -> None:
        repo_id = self.setup_repo()
        oid = self.push()
        config = GatewayConfig(
            data_dir=self.data_dir,
            ssh_host="127.0.0.1",
            ssh_port=0,
            http_host="127.0.0.1",
            http_port=0,
        )
        load_or_generate_host_key(config.resolved_host_key_path, bits=1024)

        async def serve_briefly() -> None:
            task = asyncio.create_task(cli.cmd_serve(config)._serve(config, backfill=True))
            for _ in range(100):
                await asyncio.sleep(0.1)
                if any("Backfilled" in line for line in cm.output):
                    break
            self.assertFalse(task.done())
            task.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await task

        with self.assertLogs("gitgate.cli", "INFO") as cm:
            asyncio.run(serve_briefly())
        self.assertIn("INFO:gitgate.cli:Backfilled 1 of 1 repositories", cm.output)
        self.assertEqual(
            [("main", oid)],
            [(r.name, r.commit_oid) for r in list_refs(self.open_store(), repo_id)],
        )
