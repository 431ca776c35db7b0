# relay.py -- Relay between a client channel and a git service process
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

"""Relay between a client channel and a git service process.

A :class:`ProcessRelay` copies bytes in both directions between a
bidirectional client channel (a paramiko channel, or anything with the same
``recv``/``sendall`` surface) and a subprocess running ``git upload-pack``
or ``git receive-pack``:

* client -> process stdin; end of client input closes the process stdin
* process stdout -> client; process stderr -> client stderr

The relay moves through the states ``open``, ``input-closed``,
``output-drained`` and ``closed``. The exit status is sent to the client
only once the process has exited and everything it wrote to stdout has
been forwarded. If the client goes away first the process is killed.
"""

import enum
import subprocess
import threading
from collections.abc import Callable
from typing import Protocol

from . import log_utils

logger = log_utils.getLogger(__name__)

BUFSIZE = 32 * 1024

# How often a relay with closed input checks whether the client is gone.
CLIENT_POLL_INTERVAL = 0.1


class Channel(Protocol):
    """The part of :class:`paramiko.Channel` the relay uses."""

    closed: bool

    def recv(self, nbytes: int) -> bytes: ...

    def sendall(self, data: bytes) -> None: ...

    def sendall_stderr(self, data: bytes) -> None: ...

    def send_exit_status(self, status: int) -> None: ...

    def close(self) -> None: ...


class RelayState(enum.Enum):
    OPEN = "open"
    INPUT_CLOSED = "input-closed"
    OUTPUT_DRAINED = "output-drained"
    CLOSED = "closed"


class ProcessRelay:
    """Relay the streams of one git service process over a client channel."""

    def __init__(
        self,
        channel: Channel,
        process: subprocess.Popen,
        on_exit: Callable[[int | None], None] | None = None,
    ) -> None:
        """Create a relay.

        Args:
          channel: Client channel
          process: Process started with stdin, stdout and stderr pipes
          on_exit: Called with the exit code once the relay is closed; the
            exit code is None if the process was killed on behalf of the client
        """
        self.channel = channel
        self.process = process
        self.on_exit = on_exit
        self.cancelled = threading.Event()
        self._finished = threading.Event()
        self._lock = threading.Lock()
        self.state = RelayState.OPEN
        self.transitions = [RelayState.OPEN]
        self.exit_status: int | None = None

    def _transition(self, state: RelayState) -> None:
        with self._lock:
            self.state = state
            self.transitions.append(state)
        logger.debug("Relay for pid %d is now %s", self.process.pid, state.value)

    def cancel(self) -> None:
        """Stop relaying and kill the process, if it is still running."""
        if self.cancelled.is_set():
            return
        self.cancelled.set()
        if self.process.poll() is None:
            logger.info("Client went away, killing pid %d", self.process.pid)
            self.process.kill()

    def _copy_input(self) -> None:
        stdin = self.process.stdin
        assert stdin is not None
        while not self.cancelled.is_set():
            try:
                data = self.channel.recv(BUFSIZE)
            except OSError:
                data = b""
            if not data:
                break
            try:
                stdin.write(data)
                stdin.flush()
            except (BrokenPipeError, ValueError):
                # The process exited or closed its stdin; its remaining
                # output still gets drained.
                break
        try:
            stdin.close()
        except OSError:
            pass
        if self._finished.is_set():
            return
        if self.channel.closed:
            self.cancel()
            return
        self._transition(RelayState.INPUT_CLOSED)
        while not self._finished.wait(CLIENT_POLL_INTERVAL):
            if self.channel.closed:
                self.cancel()
                return

    def _copy_output(self) -> None:
        stdout = self.process.stdout
        assert stdout is not None
        while True:
            data = stdout.read1(BUFSIZE)
            if not data:
                break
            if self.cancelled.is_set():
                continue
            try:
                self.channel.sendall(data)
            except OSError as e:
                logger.debug("Unable to forward output to client: %s", e)
                self.cancel()

    def _copy_stderr(self) -> None:
        stderr = self.process.stderr
        if stderr is None:
            return
        while True:
            data = stderr.read1(BUFSIZE)
            if not data:
                break
            if self.cancelled.is_set():
                continue
            try:
                self.channel.sendall_stderr(data)
            except OSError:
                self.cancel()

    def run(self) -> int | None:
        """Relay until the process has exited and its output was forwarded.

        Returns: The exit status of the process, or None if it was killed
            because the client went away
        """
        input_thread = threading.Thread(
            target=self._copy_input, name="gitgate-relay-in", daemon=True
        )
        stderr_thread = threading.Thread(
            target=self._copy_stderr, name="gitgate-relay-err", daemon=True
        )
        input_thread.start()
        stderr_thread.start()
        try:
            self._copy_output()
            stderr_thread.join()
            returncode = self.process.wait()
            self._transition(RelayState.OUTPUT_DRAINED)
            if not self.cancelled.is_set():
                self.exit_status = returncode
                try:
                    self.channel.send_exit_status(returncode)
                except OSError as e:
                    logger.debug("Unable to send exit status: %s", e)
        finally:
            self._finished.set()
            if self.process.poll() is None:
                self.process.kill()
                self.process.wait()
            self.channel.close()
            input_thread.join()
            self._transition(RelayState.CLOSED)
        if self.on_exit is not None:
            self.on_exit(self.exit_status)
        return self.exit_status
