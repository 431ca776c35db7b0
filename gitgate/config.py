# config.py -- Gateway configuration
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

"""Gateway configuration.

Settings are read from a git-config style file::

    [core]
        datadir = /srv/gitgate
        database = sqlite:////srv/gitgate/gitgate.db
        repositories = /srv/gitgate/repos
        git = /usr/bin/git
        loglevel = INFO
        logfile = /var/log/gitgate.log
    [ssh]
        host = 0.0.0.0
        port = 2222
        hostkey = /srv/gitgate/ssh_host_rsa_key
    [http]
        host = 0.0.0.0
        port = 8000
    [index]
        settledelay = 0.1
        maxblobsize = 1048576
        binarychecksize = 8000
        batchsize = 500
        workers = 4

and then overridden by ``GITGATE_<SECTION>_<NAME>`` environment variables,
e.g. ``GITGATE_SSH_PORT=2022``.
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace

from dulwich.config import ConfigFile

DEFAULT_SSH_PORT = 2222
DEFAULT_HTTP_PORT = 8000
DEFAULT_MAX_BLOB_SIZE = 1024 * 1024
DEFAULT_BINARY_CHECK_SIZE = 8000
DEFAULT_BATCH_SIZE = 500
DEFAULT_SETTLE_DELAY = 0.1

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# (section, name) in the configuration file for each field.
_CONFIG_KEYS = {
    "data_dir": ("core", "datadir"),
    "database_url": ("core", "database"),
    "repositories_dir": ("core", "repositories"),
    "git_executable": ("core", "git"),
    "log_level": ("core", "loglevel"),
    "log_file": ("core", "logfile"),
    "ssh_host": ("ssh", "host"),
    "ssh_port": ("ssh", "port"),
    "ssh_host_key_path": ("ssh", "hostkey"),
    "http_host": ("http", "host"),
    "http_port": ("http", "port"),
    "settle_delay": ("index", "settledelay"),
    "max_blob_size": ("index", "maxblobsize"),
    "binary_check_size": ("index", "binarychecksize"),
    "batch_size": ("index", "batchsize"),
    "index_workers": ("index", "workers"),
}


@dataclass(frozen=True)
class GatewayConfig:
    """Settings shared by the transports and the indexer."""

    data_dir: str = "data"
    database_url: str | None = None
    repositories_dir: str | None = None
    git_executable: str = "git"
    log_level: str = "INFO"
    log_file: str | None = None
    ssh_host: str = "0.0.0.0"
    ssh_port: int = DEFAULT_SSH_PORT
    ssh_host_key_path: str | None = None
    http_host: str = "0.0.0.0"
    http_port: int = DEFAULT_HTTP_PORT
    settle_delay: float = DEFAULT_SETTLE_DELAY
    max_blob_size: int = DEFAULT_MAX_BLOB_SIZE
    binary_check_size: int = DEFAULT_BINARY_CHECK_SIZE
    batch_size: int = DEFAULT_BATCH_SIZE
    index_workers: int = 4

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.settle_delay < 0:
            raise ValueError(f"settle_delay must not be negative, got {self.settle_delay}")
        if self.max_blob_size <= 0:
            raise ValueError(f"max_blob_size must be positive, got {self.max_blob_size}")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ValueError(f"Unknown log level {self.log_level!r}")

    @property
    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return "sqlite:///" + os.path.abspath(os.path.join(self.data_dir, "gitgate.db"))

    @property
    def resolved_repositories_dir(self) -> str:
        return self.repositories_dir or os.path.join(self.data_dir, "repos")

    @property
    def resolved_host_key_path(self) -> str:
        return self.ssh_host_key_path or os.path.join(
            self.data_dir, "ssh_host_rsa_key"
        )

    def with_overrides(self, **overrides: object) -> "GatewayConfig":
        """Return a copy with every non-None override applied."""
        return replace(
            self, **{k: v for k, v in overrides.items() if v is not None}
        )

    @classmethod
    def from_config_file(cls, config: ConfigFile) -> "GatewayConfig":
        values: dict[str, object] = {}
        for name, (section, key) in _CONFIG_KEYS.items():
            try:
                raw = config.get((section.encode("ascii"),), key.encode("ascii"))
            except KeyError:
                continue
            values[name] = _coerce(name, raw.decode("utf-8"))
        return cls(**values)  # type: ignore[arg-type]

    @classmethod
    def from_environ(
        cls, environ: Mapping[str, str] | None = None, base: "GatewayConfig | None" = None
    ) -> "GatewayConfig":
        if environ is None:
            environ = os.environ
        if base is None:
            base = cls()
        values: dict[str, object] = {}
        for name, (section, key) in _CONFIG_KEYS.items():
            var = f"GITGATE_{section.upper()}_{key.upper()}"
            if var in environ:
                values[name] = _coerce(name, environ[var])
        return replace(base, **values)  # type: ignore[arg-type]


def _coerce(name: str, value: str) -> object:
    kind = {f.name: f.type for f in fields(GatewayConfig)}[name]
    if kind in (int, "int"):
        return int(value)
    if kind in (float, "float"):
        return float(value)
    return value


def load_config(
    path: str | None = None, environ: Mapping[str, str] | None = None
) -> GatewayConfig:
    """Load the gateway configuration.

    Args:
      path: Optional path to a configuration file; a missing file is an error.
      environ: Environment to read overrides from, defaults to os.environ.
    Returns: A GatewayConfig
    """
    if path is not None:
        base = GatewayConfig.from_config_file(ConfigFile.from_path(path))
    else:
        base = GatewayConfig()
    return GatewayConfig.from_environ(environ, base=base)
