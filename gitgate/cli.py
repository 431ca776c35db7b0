# cli.py -- Command line interface for gitgate
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

"""Command line interface for gitgate.

Usage: gitgate [--config FILE] [--data-dir DIR] [--database-url URL] COMMAND ...

Run ``gitgate --help`` for the list of commands.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
import types
from collections.abc import Sequence

from sqlalchemy.exc import IntegrityError

from . import log_utils
from .config import GatewayConfig, load_config
from .engine import VersionControlEngine
from .errors import GitGateError
from .identity import IdentityProvider
from .indexer import Indexer, IndexScheduler
from .models import PERMISSIONS, Repository
from .ssh import SSHGitServer, load_or_generate_host_key
from .store import IndexStore
from .web import GatewayHTTPServer, create_app

logger = log_utils.getLogger(__name__)


def signal_int(signal: int, frame: types.FrameType | None) -> None:
    sys.exit(1)


def _split_repo_name(value: str) -> tuple[str, str]:
    owner, sep, name = value.partition("/")
    if not sep or not owner or not name or "/" in name:
        raise argparse.ArgumentTypeError(f"expected OWNER/NAME, got {value!r}")
    if name.endswith(".git"):
        name = name[: -len(".git")]
    return owner, name


class Command:
    """A gitgate subcommand."""

    def __init__(self, config: GatewayConfig) -> None:
        self.config = config

    def open_store(self) -> IndexStore:
        os.makedirs(self.config.data_dir, exist_ok=True)
        return IndexStore(self.config.resolved_database_url)

    def run(self, args: Sequence[str]) -> int | None:
        """Run the command."""
        raise NotImplementedError(self.run)


class cmd_init_db(Command):
    """Create the database tables and the search index."""

    def run(self, args: Sequence[str]) -> None:
        argparse.ArgumentParser(prog="gitgate init-db").parse_args(args)
        store = self.open_store()
        try:
            store.create_all()
        finally:
            store.dispose()
        logger.info("Initialized %s", self.config.resolved_database_url)


class cmd_add_user(Command):
    """Register a user."""

    def run(self, args: Sequence[str]) -> None:
        parser = argparse.ArgumentParser(prog="gitgate add-user")
        parser.add_argument("username")
        parsed_args = parser.parse_args(args)
        store = self.open_store()
        try:
            user = IdentityProvider(store).add_user(parsed_args.username)
        finally:
            store.dispose()
        print(user.id)


class cmd_add_key(Command):
    """Register an SSH public key for a user."""

    def run(self, args: Sequence[str]) -> int | None:
        parser = argparse.ArgumentParser(prog="gitgate add-key")
        parser.add_argument("username")
        parser.add_argument("keyfile", help="File with an OpenSSH public key, - for stdin")
        parser.add_argument("--title", help="Title of the key, defaults to its comment")
        parsed_args = parser.parse_args(args)
        if parsed_args.keyfile == "-":
            public_key = sys.stdin.read()
        else:
            with open(parsed_args.keyfile) as f:
                public_key = f.read()
        title = parsed_args.title
        if title is None:
            parts = public_key.split(None, 2)
            title = parts[2].strip() if len(parts) > 2 else parsed_args.username
        store = self.open_store()
        try:
            identity = IdentityProvider(store)
            user = identity.find_user_by_username(parsed_args.username)
            if user is None:
                logger.error("No such user: %s", parsed_args.username)
                return 1
            key = identity.add_public_key(user.id, title, public_key)
        finally:
            store.dispose()
        print(key.fingerprint)
        return None


class cmd_create_token(Command):
    """Create a personal access token for HTTP authentication."""

    def run(self, args: Sequence[str]) -> int | None:
        parser = argparse.ArgumentParser(prog="gitgate create-token")
        parser.add_argument("username")
        parser.add_argument("--name", default="git", help="Name of the token")
        parsed_args = parser.parse_args(args)
        store = self.open_store()
        try:
            identity = IdentityProvider(store)
            user = identity.find_user_by_username(parsed_args.username)
            if user is None:
                logger.error("No such user: %s", parsed_args.username)
                return 1
            token = identity.create_token(user.id, parsed_args.name)
        finally:
            store.dispose()
        print(token)
        return None


class cmd_create_repo(Command):
    """Create a bare repository and register it."""

    def run(self, args: Sequence[str]) -> int | None:
        parser = argparse.ArgumentParser(prog="gitgate create-repo")
        parser.add_argument("repo", type=_split_repo_name, help="OWNER/NAME")
        parser.add_argument("--private", action="store_true")
        parser.add_argument("--default-branch", default="main")
        parsed_args = parser.parse_args(args)
        owner, name = parsed_args.repo
        store = self.open_store()
        try:
            identity = IdentityProvider(store)
            user = identity.find_user_by_username(owner)
            if user is None:
                logger.error("No such user: %s", owner)
                return 1
            if identity.resolve_repository(owner, name) is not None:
                logger.error("Repository %s/%s already exists", owner, name)
                return 1
            path = os.path.join(
                self.config.resolved_repositories_dir, owner, name + ".git"
            )
            os.makedirs(os.path.dirname(path), exist_ok=True)
            VersionControlEngine.init_bare(
                path, default_branch=parsed_args.default_branch
            ).close()
            repo = identity.add_repository(
                user.id,
                name,
                path,
                is_public=not parsed_args.private,
                default_branch=parsed_args.default_branch,
            )
        finally:
            store.dispose()
        print(repo.id)
        return None


class cmd_add_collaborator(Command):
    """Give a user access to a repository."""

    def run(self, args: Sequence[str]) -> int | None:
        parser = argparse.ArgumentParser(prog="gitgate add-collaborator")
        parser.add_argument("repo", type=_split_repo_name, help="OWNER/NAME")
        parser.add_argument("username")
        parser.add_argument("permission", choices=PERMISSIONS)
        parsed_args = parser.parse_args(args)
        store = self.open_store()
        try:
            identity = IdentityProvider(store)
            repo = identity.resolve_repository(*parsed_args.repo)
            if repo is None:
                logger.error("No such repository: %s/%s", *parsed_args.repo)
                return 1
            user = identity.find_user_by_username(parsed_args.username)
            if user is None:
                logger.error("No such user: %s", parsed_args.username)
                return 1
            identity.add_collaborator(repo.id, user.id, parsed_args.permission)
        finally:
            store.dispose()
        return None


class cmd_reindex(Command):
    """Drop and rebuild the index of a repository."""

    def run(self, args: Sequence[str]) -> int | None:
        parser = argparse.ArgumentParser(prog="gitgate reindex")
        parser.add_argument("repo", type=_split_repo_name, help="OWNER/NAME")
        parsed_args = parser.parse_args(args)
        store = self.open_store()
        try:
            repo = IdentityProvider(store).resolve_repository(*parsed_args.repo)
            if repo is None:
                logger.error("No such repository: %s/%s", *parsed_args.repo)
                return 1
            count = Indexer(store, self.config).full_reindex(repo.id, repo.disk_path)
        finally:
            store.dispose()
        logger.info("Indexed %d refs of %s/%s", count, *parsed_args.repo)
        return None


class cmd_backfill(Command):
    """Index every repository that has not been indexed yet."""

    def run(self, args: Sequence[str]) -> None:
        argparse.ArgumentParser(prog="gitgate backfill").parse_args(args)
        store = self.open_store()
        try:
            repositories = IdentityProvider(store).list_repositories()
            indexed = Indexer(store, self.config).backfill(repositories)
        finally:
            store.dispose()
        logger.info("Indexed %d of %d repositories", len(indexed), len(repositories))


class cmd_serve(Command):
    """Serve all repositories over SSH and smart HTTP."""

    def run(self, args: Sequence[str]) -> None:
        parser = argparse.ArgumentParser(prog="gitgate serve")
        parser.add_argument("--ssh-host", help="Binding address for SSH.")
        parser.add_argument("--ssh-port", type=int, help="Binding port for SSH.")
        parser.add_argument("--http-host", help="Binding address for HTTP.")
        parser.add_argument("--http-port", type=int, help="Binding port for HTTP.")
        parser.add_argument(
            "--no-backfill",
            action="store_true",
            help="Don't index unindexed repositories on startup.",
        )
        parsed_args = parser.parse_args(args)
        config = self.config.with_overrides(
            ssh_host=parsed_args.ssh_host,
            ssh_port=parsed_args.ssh_port,
            http_host=parsed_args.http_host,
            http_port=parsed_args.http_port,
        )
        try:
            asyncio.run(self._serve(config, backfill=not parsed_args.no_backfill))
        except KeyboardInterrupt:
            pass

    @staticmethod
    async def _backfill(indexer: Indexer, repositories: list[Repository]) -> None:
        try:
            indexed = await asyncio.to_thread(indexer.backfill, repositories)
        except Exception:
            logger.exception("Backfill failed")
            return
        logger.info(
            "Backfilled %d of %d repositories", len(indexed), len(repositories)
        )

    async def _serve(self, config: GatewayConfig, backfill: bool) -> None:
        store = self.open_store()
        store.create_all()
        indexer = Indexer(store, config)
        scheduler = IndexScheduler(indexer)
        identity = IdentityProvider(store)
        host_key = load_or_generate_host_key(config.resolved_host_key_path)
        ssh_server = SSHGitServer(store, config, host_key, scheduler, identity)
        http_server = GatewayHTTPServer(
            create_app(store, config, scheduler, identity),
            config.http_host,
            config.http_port,
        )
        backfill_task: asyncio.Task[None] | None = None
        ssh_server.start()
        try:
            await http_server.start()
            if backfill:
                backfill_task = asyncio.create_task(
                    self._backfill(indexer, identity.list_repositories())
                )
            await asyncio.Event().wait()
        finally:
            if backfill_task is not None:
                backfill_task.cancel()
            await http_server.stop()
            ssh_server.stop()
            scheduler.shutdown(wait=False)
            store.dispose()


commands = {
    "add-collaborator": cmd_add_collaborator,
    "add-key": cmd_add_key,
    "add-user": cmd_add_user,
    "backfill": cmd_backfill,
    "create-repo": cmd_create_repo,
    "create-token": cmd_create_token,
    "init-db": cmd_init_db,
    "reindex": cmd_reindex,
    "serve": cmd_serve,
}


def main(argv: Sequence[str] | None = None) -> int | None:
    """Main entry point for the gitgate CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code or None
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(
        prog="gitgate", description="Git gateway with repository indexing"
    )
    parser.add_argument("--config", help="Path to a gitgate configuration file")
    parser.add_argument("--data-dir", help="Directory for the database and host key")
    parser.add_argument("--database-url", help="SQLAlchemy URL of the database")
    parser.add_argument("--log-level", help="Lowest level to log, e.g. DEBUG")
    parser.add_argument(
        "command",
        help=f"Command to run. Available: {', '.join(sorted(commands.keys()))}",
    )
    parser.add_argument("args", nargs=argparse.REMAINDER)
    parsed_args = parser.parse_args(argv)

    try:
        cmd_kls = commands[parsed_args.command]
    except KeyError:
        log_utils.default_logging_config()
        logging.fatal("No such subcommand: %s", parsed_args.command)
        return 1

    try:
        config = load_config(parsed_args.config).with_overrides(
            data_dir=parsed_args.data_dir,
            database_url=parsed_args.database_url,
            log_level=parsed_args.log_level,
        )
    except (GitGateError, ValueError, OSError) as e:
        log_utils.default_logging_config()
        logging.fatal("%s", e)
        return 1

    log_utils.default_logging_config(config.log_level, config.log_file)
    try:
        return cmd_kls(config).run(parsed_args.args)
    except (GitGateError, IntegrityError, ValueError, OSError) as e:
        logging.fatal("%s", e)
        return 1


def _main() -> None:
    signal.signal(signal.SIGINT, signal_int)

    sys.exit(main())


if __name__ == "__main__":
    _main()
