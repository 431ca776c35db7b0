# test_refs.py -- tests for ref snapshot comparison
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

"""Tests for gitgate.refs."""

from gitgate.protocol import ZERO_SHA
from gitgate.refs import RefChange, diff_ref_snapshots, split_snapshot_key

from . import TestCase

A = "a" * 40
B = "b" * 40
C = "c" * 40


class SplitSnapshotKeyTests(TestCase):
    def test_split(self) -> None:
        self.assertEqual(("branch", "main"), split_snapshot_key("branch:main"))
        self.assertEqual(("tag", "v1:rc"), split_snapshot_key("tag:v1:rc"))

    def test_invalid(self) -> None:
        self.assertRaises(ValueError, split_snapshot_key, "main")


class DiffRefSnapshotsTests(TestCase):
    def test_unchanged(self) -> None:
        self.assertEqual([], diff_ref_snapshots({"branch:main": A}, {"branch:main": A}))

    def test_created(self) -> None:
        changes = diff_ref_snapshots({}, {"branch:main": A})
        self.assertEqual([RefChange("main", "branch", None, A)], changes)
        self.assertTrue(changes[0].is_create)
        self.assertFalse(changes[0].is_delete)

    def test_moved(self) -> None:
        self.assertEqual(
            [RefChange("main", "branch", A, B)],
            diff_ref_snapshots({"branch:main": A}, {"branch:main": B}),
        )

    def test_deleted(self) -> None:
        changes = diff_ref_snapshots({"tag:v1": A}, {})
        self.assertEqual([RefChange("v1", "tag", A, ZERO_SHA)], changes)
        self.assertTrue(changes[0].is_delete)

    def test_branch_and_tag_with_same_name(self) -> None:
        changes = diff_ref_snapshots(
            {"branch:v1": A, "tag:v1": A}, {"branch:v1": B, "tag:v1": A}
        )
        self.assertEqual([RefChange("v1", "branch", A, B)], changes)

    def test_mixed(self) -> None:
        changes = diff_ref_snapshots(
            {"branch:main": A, "branch:old": B},
            {"branch:main": C, "branch:new": A},
        )
        self.assertEqual(
            {
                RefChange("main", "branch", A, C),
                RefChange("new", "branch", None, A),
                RefChange("old", "branch", B, ZERO_SHA),
            },
            set(changes),
        )
