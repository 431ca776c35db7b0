# identity.py -- Users, keys, tokens and repository lookup
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

"""Users, keys, tokens and repository lookup.

The gateway authenticates SSH clients by public key and HTTP clients by
personal access token (used as the password of HTTP Basic auth). Password
checking is left to the embedding application, which can pass a
``password_checker`` callable.
"""

import base64
import binascii
import hashlib
import hmac
import secrets
from collections.abc import Callable, Iterator

from sqlalchemy import select

from . import log_utils
from .errors import InvalidPublicKey
from .models import AccessToken, Collaborator, Repository, SSHKey, User, utcnow
from .store import IndexStore

logger = log_utils.getLogger(__name__)

VALID_KEY_TYPES = (
    "ssh-rsa",
    "ssh-ed25519",
    "ssh-dss",
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
    "sk-ssh-ed25519@openssh.com",
    "sk-ecdsa-sha2-nistp256@openssh.com",
)

TOKEN_PREFIX = "gitgate_"

PasswordChecker = Callable[[User, str], bool]


def parse_public_key(public_key: str) -> tuple[str, bytes]:
    """Parse an OpenSSH public key line into its type and key blob.

    Raises:
      InvalidPublicKey: if the key type is unknown or the blob isn't
        canonical base64 of at least 16 bytes
    """
    parts = public_key.strip().split()
    if len(parts) < 2:
        raise InvalidPublicKey("Expected '<type> <base64> [comment]'")
    key_type, key_data = parts[0], parts[1]
    if key_type not in VALID_KEY_TYPES:
        raise InvalidPublicKey(f"Unsupported key type {key_type!r}")
    try:
        blob = base64.b64decode(key_data, validate=True)
    except binascii.Error as e:
        raise InvalidPublicKey(f"Invalid key data: {e}") from e
    if base64.b64encode(blob).decode("ascii") != key_data:
        raise InvalidPublicKey("Key data is not canonical base64")
    if len(blob) < 16:
        raise InvalidPublicKey("Key data too short")
    return key_type, blob


def generate_fingerprint(public_key: str) -> str | None:
    """Return the ``SHA256:...`` fingerprint of a public key, or None if invalid."""
    try:
        _, blob = parse_public_key(public_key)
    except InvalidPublicKey:
        return None
    return _fingerprint(blob)


def _fingerprint(blob: bytes) -> str:
    digest = base64.b64encode(hashlib.sha256(blob).digest()).decode("ascii")
    return "SHA256:" + digest.rstrip("=")


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class IdentityProvider:
    """Lookup of users, their credentials and their repositories."""

    def __init__(
        self, store: IndexStore, password_checker: PasswordChecker | None = None
    ) -> None:
        self.store = store
        self.password_checker = password_checker

    def get_user(self, user_id: str) -> User | None:
        with self.store.session() as session:
            return session.get(User, user_id)

    def find_user_by_username(self, username: str) -> User | None:
        with self.store.session() as session:
            return session.scalars(
                select(User).where(User.username == username).limit(1)
            ).first()

    def iter_public_keys(self) -> Iterator[tuple[str, bytes]]:
        """Yield (user_id, key blob) for every stored public key."""
        with self.store.session() as session:
            stored = session.execute(select(SSHKey.user_id, SSHKey.public_key)).all()
        for user_id, public_key in stored:
            try:
                _, blob = parse_public_key(public_key)
            except InvalidPublicKey:
                logger.warning("Ignoring unparseable public key of user %s", user_id)
                continue
            yield user_id, blob

    def find_user_by_public_key(self, key_blob: bytes) -> User | None:
        """Find the user owning the public key with exactly this blob.

        Every stored key is compared in constant time; the first match wins.
        """
        for user_id, stored_blob in self.iter_public_keys():
            if len(stored_blob) == len(key_blob) and hmac.compare_digest(
                stored_blob, key_blob
            ):
                user = self.get_user(user_id)
                if user is not None:
                    return user
        return None

    def authenticate(self, username: str, secret: str) -> User | None:
        """Authenticate HTTP Basic credentials.

        The secret is tried as a personal access token first, then handed to
        the password checker if one was configured.
        """
        user = self.find_user_by_username(username)
        if user is None:
            return None
        token_hash = hash_token(secret)
        with self.store.session(write=True) as session:
            tokens = session.scalars(
                select(AccessToken).where(AccessToken.user_id == user.id)
            ).all()
            for token in tokens:
                if hmac.compare_digest(token.token_hash, token_hash):
                    token.last_used_at = utcnow()
                    return user
        if self.password_checker is not None and self.password_checker(user, secret):
            return user
        return None

    def resolve_repository(self, owner: str, name: str) -> Repository | None:
        """Look up a repository by owner username and name.

        A trailing ``.git`` on name is ignored. A missing owner and a missing
        repository both give None.
        """
        if name.endswith(".git"):
            name = name[: -len(".git")]
        with self.store.session() as session:
            return session.scalars(
                select(Repository)
                .join(User, User.id == Repository.owner_id)
                .where(User.username == owner, Repository.name == name)
                .limit(1)
            ).first()

    def list_repositories(self) -> list[Repository]:
        with self.store.session() as session:
            return list(session.scalars(select(Repository)).all())

    def add_user(self, username: str) -> User:
        with self.store.session(write=True) as session:
            user = User(username=username)
            session.add(user)
        return user

    def add_public_key(self, user_id: str, title: str, public_key: str) -> SSHKey:
        _, blob = parse_public_key(public_key)
        with self.store.session(write=True) as session:
            key = SSHKey(
                user_id=user_id,
                title=title,
                public_key=public_key.strip(),
                fingerprint=_fingerprint(blob),
            )
            session.add(key)
        return key

    def create_token(self, user_id: str, name: str) -> str:
        """Create a personal access token and return its plain text.

        Only the hash is stored; the plain text can't be recovered later.
        """
        token = TOKEN_PREFIX + secrets.token_hex(20)
        with self.store.session(write=True) as session:
            session.add(AccessToken(user_id=user_id, name=name, token_hash=hash_token(token)))
        return token

    def add_repository(
        self,
        owner_id: str,
        name: str,
        disk_path: str,
        is_public: bool = True,
        default_branch: str = "main",
    ) -> Repository:
        with self.store.session(write=True) as session:
            repo = Repository(
                owner_id=owner_id,
                name=name,
                disk_path=disk_path,
                is_public=is_public,
                default_branch=default_branch,
            )
            session.add(repo)
        return repo

    def add_collaborator(self, repo_id: str, user_id: str, permission: str) -> Collaborator:
        with self.store.session(write=True) as session:
            collaborator = Collaborator(
                repo_id=repo_id, user_id=user_id, permission=permission
            )
            session.add(collaborator)
        return collaborator
