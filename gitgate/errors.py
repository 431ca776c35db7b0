# errors.py -- errors for gitgate
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

"""gitgate-related exception classes."""


class GitGateError(Exception):
    """Base class for errors raised by gitgate."""


class RepositoryNotFound(GitGateError):
    """The requested owner/repository pair does not resolve to a repository.

    Raised for a missing owner and a missing repository alike, so callers
    can't tell the two apart.
    """

    def __init__(self, owner: str, name: str) -> None:
        self.owner = owner
        self.name = name
        super().__init__(f"Repository not found: {owner}/{name}")


class AuthenticationRequired(GitGateError):
    """The operation needs an authenticated user and none was supplied."""


class AccessDenied(GitGateError):
    """The authenticated user lacks the permission the operation needs."""

    def __init__(self, user_id: str | None, repo_id: str, service: str) -> None:
        self.user_id = user_id
        self.repo_id = repo_id
        self.service = service
        super().__init__(f"{service} denied on {repo_id} for {user_id or 'anonymous'}")


class InvalidServiceRequest(GitGateError):
    """A request named an unsupported git service or was malformed."""


class InvalidPublicKey(GitGateError):
    """An SSH public key could not be parsed."""


class InvalidObjectId(ValueError):
    """A value is not a hex object id."""

    def __init__(self, value: object) -> None:
        self.value = value
        super().__init__(f"Invalid object id: {value!r}")


class EngineError(GitGateError):
    """The backing version-control engine failed to perform an operation."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        self.cause = cause
        super().__init__(message)
