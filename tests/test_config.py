# test_config.py -- tests for gateway configuration
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

"""Tests for gitgate.config."""

import os

from gitgate.config import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_HTTP_PORT,
    DEFAULT_SSH_PORT,
    GatewayConfig,
    load_config,
)

from . import TestCase


class GatewayConfigTests(TestCase):
    def test_defaults(self) -> None:
        config = GatewayConfig()
        self.assertEqual(DEFAULT_SSH_PORT, config.ssh_port)
        self.assertEqual(DEFAULT_HTTP_PORT, config.http_port)
        self.assertEqual(DEFAULT_BATCH_SIZE, config.batch_size)
        self.assertEqual(1024 * 1024, config.max_blob_size)
        self.assertEqual(8000, config.binary_check_size)
        self.assertEqual("git", config.git_executable)
        self.assertEqual("INFO", config.log_level)
        self.assertIsNone(config.log_file)

    def test_resolved_paths(self) -> None:
        config = GatewayConfig(data_dir="/srv/gitgate")
        self.assertEqual(
            "sqlite:////srv/gitgate/gitgate.db", config.resolved_database_url
        )
        self.assertEqual("/srv/gitgate/repos", config.resolved_repositories_dir)
        self.assertEqual(
            "/srv/gitgate/ssh_host_rsa_key", config.resolved_host_key_path
        )

    def test_explicit_paths_win(self) -> None:
        config = GatewayConfig(
            data_dir="/srv/gitgate",
            database_url="sqlite://",
            repositories_dir="/git",
            ssh_host_key_path="/etc/key",
        )
        self.assertEqual("sqlite://", config.resolved_database_url)
        self.assertEqual("/git", config.resolved_repositories_dir)
        self.assertEqual("/etc/key", config.resolved_host_key_path)

    def test_invalid(self) -> None:
        self.assertRaises(ValueError, GatewayConfig, batch_size=0)
        self.assertRaises(ValueError, GatewayConfig, settle_delay=-1)
        self.assertRaises(ValueError, GatewayConfig, max_blob_size=0)
        self.assertRaises(ValueError, GatewayConfig, log_level="chatty")
        GatewayConfig(log_level="debug")

    def test_with_overrides_ignores_none(self) -> None:
        config = GatewayConfig().with_overrides(ssh_port=2022, http_port=None)
        self.assertEqual(2022, config.ssh_port)
        self.assertEqual(DEFAULT_HTTP_PORT, config.http_port)

    def test_from_environ(self) -> None:
        config = GatewayConfig.from_environ(
            {
                "GITGATE_SSH_PORT": "2022",
                "GITGATE_INDEX_SETTLEDELAY": "0.5",
                "GITGATE_CORE_GIT": "/usr/local/bin/git",
                "GITGATE_CORE_LOGLEVEL": "WARNING",
                "UNRELATED": "x",
            }
        )
        self.assertEqual(2022, config.ssh_port)
        self.assertEqual(0.5, config.settle_delay)
        self.assertEqual("/usr/local/bin/git", config.git_executable)
        self.assertEqual("WARNING", config.log_level)


class LoadConfigTests(TestCase):
    def test_file_then_environment(self) -> None:
        path = os.path.join(self.make_temp_dir(), "gitgate.conf")
        with open(path, "w") as f:
            f.write(
                "[core]\n"
                "\tdatadir = /var/lib/gitgate\n"
                "[ssh]\n"
                "\tport = 2200\n"
                "[index]\n"
                "\tbatchsize = 100\n"
            )
        config = load_config(path, environ={"GITGATE_SSH_PORT": "2300"})
        self.assertEqual("/var/lib/gitgate", config.data_dir)
        self.assertEqual(2300, config.ssh_port)
        self.assertEqual(100, config.batch_size)

    def test_no_file(self) -> None:
        self.assertEqual(GatewayConfig(), load_config(environ={}))

    def test_missing_file(self) -> None:
        self.assertRaises(
            FileNotFoundError,
            load_config,
            os.path.join(self.make_temp_dir(), "missing.conf"),
            {},
        )
