# permissions.py -- Repository access decisions
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

"""Repository access decisions.

Both checks look at the current state of the repository and collaborator
tables on every call; nothing is cached between calls.
"""

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import Collaborator, Repository

PUSH_PERMISSIONS = ("write", "admin")


def _collaborator(session: Session, user_id: str, repo_id: str) -> Collaborator | None:
    return session.scalars(
        select(Collaborator)
        .where(Collaborator.repo_id == repo_id, Collaborator.user_id == user_id)
        .limit(1)
    ).first()


def can_read(session: Session, user_id: str | None, repo_id: str) -> bool:
    """Check whether a user (or an anonymous caller) can read a repository.

    Public repositories are readable by anyone. Private ones by their owner
    and by collaborators of any permission level.
    """
    repo = session.get(Repository, repo_id)
    if repo is None:
        return False
    if repo.is_public:
        return True
    if user_id is None:
        return False
    if repo.owner_id == user_id:
        return True
    return _collaborator(session, user_id, repo_id) is not None


def can_push(session: Session, user_id: str | None, repo_id: str) -> bool:
    """Check whether a user can push to a repository.

    Only the owner and collaborators with write or admin permission can.
    """
    if user_id is None:
        return False
    repo = session.get(Repository, repo_id)
    if repo is None:
        return False
    if repo.owner_id == user_id:
        return True
    collaborator = _collaborator(session, user_id, repo_id)
    return collaborator is not None and collaborator.permission in PUSH_PERMISSIONS
