# log_utils.py -- Logging utilities for gitgate
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


"""Logging setup for gitgate.

Every module logs through a logger under the ``gitgate`` namespace. That
logger carries a no-op handler until the application configures logging,
so applications embedding gitgate see nothing they didn't ask for. The CLI
calls :func:`default_logging_config` with the level and log file of the
gateway configuration.

Setting ``GITGATE_TRACE`` to ``1`` or ``true`` forces DEBUG output with
logger names, whatever level is configured.
"""

import logging
import os
import sys
from collections.abc import Mapping

getLogger = logging.getLogger

TRACE_ENVIRONMENT_VARIABLE = "GITGATE_TRACE"

LOG_FORMAT = "%(asctime)s %(levelname)s: %(message)s"
TRACE_FORMAT = "%(asctime)s %(name)s %(levelname)s: %(message)s"

_NULL_HANDLER = logging.NullHandler()
_GITGATE_LOGGER = getLogger("gitgate")
_GITGATE_LOGGER.addHandler(_NULL_HANDLER)


def tracing_enabled(environ: Mapping[str, str] | None = None) -> bool:
    if environ is None:
        environ = os.environ
    return environ.get(TRACE_ENVIRONMENT_VARIABLE, "").lower() in ("1", "true")


def default_logging_config(level: str = "INFO", log_file: str | None = None) -> None:
    """Set up the default gitgate loggers.

    Args:
      level: Name of the lowest level to log, e.g. "INFO"
      log_file: Append to this file instead of writing to stderr
    """
    remove_null_handler()

    log_format = LOG_FORMAT
    if tracing_enabled():
        level, log_format = "DEBUG", TRACE_FORMAT
    if log_file:
        logging.basicConfig(
            level=level.upper(), filename=log_file, filemode="a", format=log_format
        )
    else:
        logging.basicConfig(level=level.upper(), stream=sys.stderr, format=log_format)


def remove_null_handler() -> None:
    """Remove the null handler from the gitgate logger.

    Applications that set up logging themselves can call this instead of
    :func:`default_logging_config`.
    """
    _GITGATE_LOGGER.removeHandler(_NULL_HANDLER)
