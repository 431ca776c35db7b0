# refs.py -- Ref snapshot comparison
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

"""Ref snapshot comparison.

A snapshot maps ``"<type>:<name>"`` (as produced by
:meth:`gitgate.engine.VersionControlEngine.snapshot_refs`) to the commit the
ref points at. Comparing the snapshots taken around a push tells the indexer
which refs were created, moved or deleted. No distinction is made between a
fast-forward and a forced update.
"""

from collections.abc import Mapping
from dataclasses import dataclass

from .protocol import ZERO_SHA


@dataclass(frozen=True)
class RefChange:
    name: str
    type: str
    old_oid: str | None
    new_oid: str

    @property
    def is_delete(self) -> bool:
        return self.new_oid == ZERO_SHA

    @property
    def is_create(self) -> bool:
        return self.old_oid is None


def split_snapshot_key(key: str) -> tuple[str, str]:
    """Split a snapshot key into (type, name)."""
    ref_type, sep, name = key.partition(":")
    if not sep:
        raise ValueError(f"Invalid snapshot key {key!r}")
    return ref_type, name


def diff_ref_snapshots(
    before: Mapping[str, str], after: Mapping[str, str]
) -> list[RefChange]:
    """Compare two ref snapshots.

    Returns: One RefChange per ref whose commit differs between the
        snapshots. Created refs have old_oid None, deleted refs have
        new_oid ZERO_SHA.
    """
    changes = []
    for key, new_oid in after.items():
        old_oid = before.get(key)
        if old_oid != new_oid:
            ref_type, name = split_snapshot_key(key)
            changes.append(RefChange(name, ref_type, old_oid, new_oid))
    for key, old_oid in before.items():
        if key not in after:
            ref_type, name = split_snapshot_key(key)
            changes.append(RefChange(name, ref_type, old_oid, ZERO_SHA))
    return changes
