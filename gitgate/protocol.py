# protocol.py -- Shared parts of the git transports
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

"""Shared parts of the git transports.

Only the little of the git wire protocol the gateway itself has to speak
lives here: pkt-line framing for the smart HTTP advertisement header, the
service names, and the grammar of SSH exec commands. Everything else is
relayed verbatim to and from git.
"""

import re
from typing import NamedTuple

from .errors import InvalidServiceRequest

ZERO_SHA = "0" * 40

SERVICES = ("upload-pack", "receive-pack")

FLUSH_PKT = b"0000"

# Largest payload that fits in one pkt-line
MAX_PKT_PAYLOAD = 65516

_SSH_COMMAND_RE = re.compile(
    r"^git-(upload-pack|receive-pack)\s+'?/?([^/']+)/([^/']+?)(?:\.git)?'?$"
)


class SSHCommand(NamedTuple):
    service: str
    owner: str
    repo: str


def pkt_line(data: bytes | None) -> bytes:
    """Wrap data in a pkt-line.

    Args:
      data: The data to wrap, or None for a flush-pkt.
    Returns: The data prefixed with its length in pkt-line format; if data
        was None, returns the flush-pkt ('0000').
    """
    if data is None:
        return FLUSH_PKT
    if len(data) > MAX_PKT_PAYLOAD:
        raise ValueError(f"pkt-line payload too long: {len(data)} bytes")
    return (f"{len(data) + 4:04x}").encode("ascii") + data


def parse_service_name(name: str | None) -> str:
    """Map a ``git-<service>`` name as used on the wire to its service.

    Raises:
      InvalidServiceRequest: for anything but git-upload-pack and
        git-receive-pack
    """
    if name is None or not name.startswith("git-") or name[4:] not in SERVICES:
        raise InvalidServiceRequest(f"Unsupported service {name!r}")
    return name[4:]


def advertisement_header(service: str) -> bytes:
    """The preamble of a smart HTTP ref advertisement for service."""
    return pkt_line(f"# service=git-{service}\n".encode("ascii")) + pkt_line(None)


def parse_ssh_command(command: str) -> SSHCommand:
    """Parse the command of an SSH exec request.

    git sends e.g. ``git-upload-pack '/owner/repo.git'``; the quotes, the
    leading slash and the ``.git`` suffix are all optional.

    Raises:
      InvalidServiceRequest: if command is not a git service invocation
    """
    m = _SSH_COMMAND_RE.match(command.strip())
    if m is None:
        raise InvalidServiceRequest(f"Invalid git command {command!r}")
    return SSHCommand(m.group(1), m.group(2), m.group(3))
