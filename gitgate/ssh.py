# ssh.py -- Git over SSH
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

"""Git over SSH.

Clients authenticate with a public key registered to a user, then request
``git-upload-pack`` or ``git-receive-pack`` on ``owner/repo``. Authorized
requests are served by relaying the channel to the git service process;
every other request is rejected the same way, whatever the reason.
"""

import os
import socket
import socketserver
import subprocess
import threading
from dataclasses import dataclass

import paramiko

from . import log_utils
from .config import GatewayConfig
from .engine import VersionControlEngine
from .errors import (
    AccessDenied,
    AuthenticationRequired,
    GitGateError,
    RepositoryNotFound,
)
from .identity import IdentityProvider
from .indexer import IndexScheduler
from .models import Repository
from .permissions import can_push, can_read
from .protocol import parse_ssh_command
from .relay import ProcessRelay
from .store import IndexStore

logger = log_utils.getLogger(__name__)

HOST_KEY_BITS = 3072

# Seconds a client gets between connecting and requesting a command.
SESSION_SETUP_TIMEOUT = 30.0


def load_or_generate_host_key(path: str, bits: int = HOST_KEY_BITS) -> paramiko.RSAKey:
    """Load the RSA host key stored at path, creating it first if necessary."""
    if os.path.exists(path):
        return paramiko.RSAKey.from_private_key_file(path)
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    key = paramiko.RSAKey.generate(bits)
    key.write_private_key_file(path)
    logger.info("Generated SSH host key %s (%s)", path, key.fingerprint)
    return key


@dataclass(frozen=True)
class GitRequest:
    """An authorized request to run a git service on a repository."""

    service: str
    repository: Repository
    user_id: str


class _GitServerInterface(paramiko.ServerInterface):
    """Policy for one SSH connection.

    The first public key that belongs to a known user binds that user to
    the connection; there is no way to switch users afterwards.
    """

    def __init__(self, server: "SSHGitServer", client_address: tuple) -> None:
        self.server = server
        self.client_address = client_address
        self.user_id: str | None = None
        self.request: GitRequest | None = None
        self.git_protocol: str | None = None
        self.command_received = threading.Event()

    def get_allowed_auths(self, username: str) -> str:
        return "publickey"

    def check_auth_publickey(self, username: str, key: paramiko.PKey) -> int:
        # Called once for the unsigned key query and again for the signed
        # request; only a key of a different user is refused the second time.
        user = self.server.identity.find_user_by_public_key(key.asbytes())
        if user is not None and self.user_id not in (None, user.id):
            logger.info(
                "Rejected key of %s from %s: connection is bound to another user",
                user.username,
                self.client_address,
            )
            return paramiko.AUTH_FAILED
        if user is None:
            logger.info(
                "Rejected %s key %s from %s",
                key.get_name(),
                key.fingerprint,
                self.client_address,
            )
            return paramiko.AUTH_FAILED
        logger.info("Authenticated %s from %s", user.username, self.client_address)
        self.user_id = user.id
        return paramiko.AUTH_SUCCESSFUL

    def check_channel_request(self, kind: str, chanid: int) -> int:
        if kind == "session":
            return paramiko.OPEN_SUCCEEDED
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED

    def check_channel_env_request(
        self, channel: paramiko.Channel, name: bytes, value: bytes
    ) -> bool:
        if name == b"GIT_PROTOCOL":
            self.git_protocol = value.decode("ascii", "replace")
            return True
        return False

    def check_channel_exec_request(
        self, channel: paramiko.Channel, command: bytes
    ) -> bool:
        if self.request is not None:
            return False
        try:
            self.request = self.server.authorize(
                self.user_id, command.decode("utf-8", "replace")
            )
        except GitGateError as e:
            logger.info("Rejected command from %s: %s", self.client_address, e)
            return False
        finally:
            self.command_received.set()
        return True


class _SSHTCPServer(socketserver.ThreadingTCPServer):

    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, gateway: "SSHGitServer", listen_addr: tuple[str, int]) -> None:
        self.gateway = gateway
        super().__init__(listen_addr, _SSHRequestHandler)

    def handle_error(self, request, client_address):  # type: ignore[no-untyped-def]
        logger.exception(
            "Exception happened during processing of request from %s", client_address
        )


class _SSHRequestHandler(socketserver.BaseRequestHandler):
    def handle(self) -> None:
        self.server.gateway.handle_connection(self.request, self.client_address)  # type: ignore[attr-defined]


class SSHGitServer:
    """SSH front end of the gateway.

    The host key is passed in; use :func:`load_or_generate_host_key` to
    obtain a persistent one.
    """

    def __init__(
        self,
        store: IndexStore,
        config: GatewayConfig,
        host_key: paramiko.PKey,
        scheduler: IndexScheduler | None = None,
        identity: IdentityProvider | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.host_key = host_key
        self.scheduler = scheduler
        self.identity = identity or IdentityProvider(store)
        self._server: _SSHTCPServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def address(self) -> tuple[str, int]:
        if self._server is None:
            raise RuntimeError("SSH server is not running")
        return self._server.server_address[:2]

    def start(self) -> None:
        if self._server is not None:
            raise RuntimeError("SSH server is already running")
        self._server = _SSHTCPServer(self, (self.config.ssh_host, self.config.ssh_port))
        logger.info("Listening for SSH connections on %s:%d", *self.address)
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="gitgate-ssh", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join()
        self._server = None
        self._thread = None
        logger.info("SSH server stopped")

    def authorize(self, user_id: str | None, command: str) -> GitRequest:
        """Decide whether a user may run an SSH exec command.

        Raises:
          InvalidServiceRequest: if command is not a git service invocation
          AuthenticationRequired: if no user is bound to the connection
          RepositoryNotFound: if the repository doesn't exist
          AccessDenied: if the user may not use the service on the repository
        """
        parsed = parse_ssh_command(command)
        if user_id is None:
            raise AuthenticationRequired("No authenticated user")
        repo = self.identity.resolve_repository(parsed.owner, parsed.repo)
        if repo is None:
            raise RepositoryNotFound(parsed.owner, parsed.repo)
        with self.store.session() as session:
            if parsed.service == "receive-pack":
                allowed = can_push(session, user_id, repo.id)
            else:
                allowed = can_read(session, user_id, repo.id)
        if not allowed:
            raise AccessDenied(user_id, repo.id, parsed.service)
        return GitRequest(parsed.service, repo, user_id)

    def handle_connection(self, sock: socket.socket, client_address: tuple) -> None:
        transport = paramiko.Transport(sock)
        try:
            transport.add_server_key(self.host_key)
            interface = _GitServerInterface(self, client_address)
            try:
                transport.start_server(server=interface)
            except (paramiko.SSHException, EOFError) as e:
                logger.info("SSH negotiation with %s failed: %s", client_address, e)
                return
            channel = transport.accept(SESSION_SETUP_TIMEOUT)
            if channel is None:
                logger.info("No session opened by %s", client_address)
                return
            if (
                not interface.command_received.wait(SESSION_SETUP_TIMEOUT)
                or interface.request is None
            ):
                channel.close()
                return
            self.run_session(channel, interface.request, interface.git_protocol)
        finally:
            transport.close()

    def run_session(
        self,
        channel: paramiko.Channel,
        request: GitRequest,
        git_protocol: str | None = None,
    ) -> int | None:
        """Serve an authorized request on channel until either side is done."""
        repo = request.repository
        engine = VersionControlEngine.from_config(
            repo.disk_path, self.config.git_executable
        )
        argv = engine.service_command(request.service)
        env = dict(os.environ)
        if git_protocol:
            env["GIT_PROTOCOL"] = git_protocol
        before = None
        if request.service == "receive-pack" and self.scheduler is not None:
            before = self.scheduler.snapshot(repo.disk_path)
        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            logger.error("Unable to start %s for %s: %s", request.service, repo.name, e)
            channel.close()
            return None
        logger.info(
            "Serving %s on %s for user %s (pid %d)",
            request.service,
            repo.name,
            request.user_id,
            process.pid,
        )
        status = ProcessRelay(channel, process).run()
        if before is not None:
            assert self.scheduler is not None
            self.scheduler.schedule(repo.id, repo.disk_path, before)
        return status
