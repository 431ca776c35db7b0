# test_identity.py -- tests for users, keys and tokens
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

"""Tests for gitgate.identity."""

import base64
import hashlib
import struct

from gitgate.errors import InvalidPublicKey
from gitgate.identity import (
    TOKEN_PREFIX,
    IdentityProvider,
    generate_fingerprint,
    hash_token,
    parse_public_key,
)
from gitgate.models import AccessToken

from . import TestCase
from .utils import make_store


def make_ed25519_key(seed: int, comment: str = "user@host") -> tuple[str, bytes]:
    """Build an OpenSSH ed25519 public key line from a seed byte."""
    key_type = b"ssh-ed25519"
    blob = (
        struct.pack(">I", len(key_type))
        + key_type
        + struct.pack(">I", 32)
        + bytes((seed + i) % 256 for i in range(32))
    )
    line = f"ssh-ed25519 {base64.b64encode(blob).decode('ascii')} {comment}"
    return line, blob


class ParsePublicKeyTests(TestCase):
    def test_valid(self) -> None:
        line, blob = make_ed25519_key(1)
        self.assertEqual(("ssh-ed25519", blob), parse_public_key(line))

    def test_without_comment(self) -> None:
        line, blob = make_ed25519_key(1)
        self.assertEqual(blob, parse_public_key(" ".join(line.split()[:2]) + "\n")[1])

    def test_unknown_type(self) -> None:
        line, _ = make_ed25519_key(1)
        self.assertRaises(
            InvalidPublicKey, parse_public_key, line.replace("ssh-ed25519", "ssh-foo", 1)
        )

    def test_bad_base64(self) -> None:
        self.assertRaises(InvalidPublicKey, parse_public_key, "ssh-rsa !!!notbase64!!!")

    def test_too_short(self) -> None:
        self.assertRaises(InvalidPublicKey, parse_public_key, "ssh-rsa AAAA")

    def test_missing_data(self) -> None:
        self.assertRaises(InvalidPublicKey, parse_public_key, "ssh-rsa")
        self.assertRaises(InvalidPublicKey, parse_public_key, "")


class FingerprintTests(TestCase):
    def test_fingerprint(self) -> None:
        line, blob = make_ed25519_key(7)
        expected = base64.b64encode(hashlib.sha256(blob).digest()).decode("ascii")
        self.assertEqual("SHA256:" + expected.rstrip("="), generate_fingerprint(line))

    def test_invalid(self) -> None:
        self.assertIsNone(generate_fingerprint("not a key"))


class IdentityProviderTests(TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.store = make_store()
        self.addCleanup(self.store.dispose)
        self.identity = IdentityProvider(self.store)
        self.alice = self.identity.add_user("alice")
        self.bob = self.identity.add_user("bob")

    def test_find_user_by_username(self) -> None:
        self.assertEqual(self.alice.id, self.identity.find_user_by_username("alice").id)
        self.assertIsNone(self.identity.find_user_by_username("carol"))

    def test_find_user_by_public_key(self) -> None:
        alice_key, alice_blob = make_ed25519_key(1)
        bob_key, bob_blob = make_ed25519_key(2)
        _, unknown_blob = make_ed25519_key(3)
        self.identity.add_public_key(self.alice.id, "laptop", alice_key)
        self.identity.add_public_key(self.bob.id, "desktop", bob_key)
        self.assertEqual(self.alice.id, self.identity.find_user_by_public_key(alice_blob).id)
        self.assertEqual(self.bob.id, self.identity.find_user_by_public_key(bob_blob).id)
        self.assertIsNone(self.identity.find_user_by_public_key(unknown_blob))

    def test_add_public_key_stores_fingerprint(self) -> None:
        line, _ = make_ed25519_key(4)
        key = self.identity.add_public_key(self.alice.id, "laptop", line)
        self.assertEqual(generate_fingerprint(line), key.fingerprint)

    def test_add_invalid_public_key(self) -> None:
        self.assertRaises(
            InvalidPublicKey,
            self.identity.add_public_key,
            self.alice.id,
            "broken",
            "ssh-rsa AAAA",
        )

    def test_token_authentication(self) -> None:
        token = self.identity.create_token(self.alice.id, "git")
        self.assertTrue(token.startswith(TOKEN_PREFIX))
        self.assertEqual(self.alice.id, self.identity.authenticate("alice", token).id)
        self.assertIsNone(self.identity.authenticate("alice", "wrong"))
        self.assertIsNone(self.identity.authenticate("bob", token))
        self.assertIsNone(self.identity.authenticate("carol", token))

    def test_token_stored_hashed(self) -> None:
        token = self.identity.create_token(self.alice.id, "git")
        with self.store.session() as session:
            stored = session.query(AccessToken).one()
        self.assertEqual(hash_token(token), stored.token_hash)
        self.assertNotEqual(token, stored.token_hash)

    def test_token_marks_last_use(self) -> None:
        token = self.identity.create_token(self.alice.id, "git")
        self.identity.authenticate("alice", token)
        with self.store.session() as session:
            self.assertIsNotNone(session.query(AccessToken).one().last_used_at)

    def test_password_checker(self) -> None:
        identity = IdentityProvider(
            self.store, password_checker=lambda user, secret: secret == "hunter2"
        )
        self.assertEqual(self.bob.id, identity.authenticate("bob", "hunter2").id)
        self.assertIsNone(identity.authenticate("bob", "hunter3"))

    def test_resolve_repository(self) -> None:
        repo = self.identity.add_repository(self.alice.id, "project", "/tmp/project.git")
        self.assertEqual(repo.id, self.identity.resolve_repository("alice", "project").id)
        self.assertEqual(
            repo.id, self.identity.resolve_repository("alice", "project.git").id
        )
        self.assertIsNone(self.identity.resolve_repository("bob", "project"))
        self.assertIsNone(self.identity.resolve_repository("ghost", "project"))
        self.assertIsNone(self.identity.resolve_repository("alice", "other"))
