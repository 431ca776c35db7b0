# web.py -- Smart HTTP git transport
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

"""Smart HTTP git transport.

Serves the two smart HTTP endpoints per repository:

* ``GET /{owner}/{repo}/info/refs?service=git-upload-pack|git-receive-pack``
* ``POST /{owner}/{repo}/git-upload-pack`` and ``.../git-receive-pack``

Callers authenticate with HTTP Basic auth, using a personal access token
as password. Anonymous callers may read public repositories; pushing
always needs credentials.
"""

import asyncio
import os
import zlib

from aiohttp import BasicAuth, web

from . import log_utils
from .config import GatewayConfig
from .engine import VersionControlEngine
from .errors import InvalidServiceRequest
from .identity import IdentityProvider
from .indexer import IndexScheduler
from .models import Repository, User
from .permissions import can_push, can_read
from .protocol import advertisement_header, parse_service_name
from .store import IndexStore

logger = log_utils.getLogger(__name__)

REALM = "gitgate"

CHUNK_SIZE = 64 * 1024

NO_CACHE_HEADERS = {
    "Expires": "Fri, 01 Jan 1980 00:00:00 GMT",
    "Pragma": "no-cache",
    "Cache-Control": "no-cache",
}

STORE_KEY = web.AppKey("store", IndexStore)
CONFIG_KEY = web.AppKey("config", GatewayConfig)
IDENTITY_KEY = web.AppKey("identity", IdentityProvider)
SCHEDULER_KEY = web.AppKey("scheduler", IndexScheduler)


def parse_basic_auth(header: str | None) -> tuple[str, str] | None:
    """Extract Basic credentials from an Authorization header.

    Returns: (username, password), or None if the header is absent, uses
        another scheme or can't be decoded
    """
    if not header:
        return None
    try:
        auth = BasicAuth.decode(header)
    except ValueError:
        return None
    return auth.login, auth.password


def _unauthorized() -> web.HTTPUnauthorized:
    return web.HTTPUnauthorized(
        text="Authentication required",
        headers={"WWW-Authenticate": f'Basic realm="{REALM}"'},
    )


def _authorize(
    app: web.Application,
    owner: str,
    name: str,
    service: str,
    authorization: str | None,
) -> Repository:
    """Resolve a repository and check the caller may use service on it.

    Raises:
      HTTPNotFound: unknown repository, or a private one the caller can't see
      HTTPUnauthorized: credentials are needed but missing or invalid
      HTTPForbidden: the caller can read but not push
    """
    identity = app[IDENTITY_KEY]
    repo = identity.resolve_repository(owner, name)
    if repo is None:
        raise web.HTTPNotFound(text="Repository not found")
    user: User | None = None
    credentials = parse_basic_auth(authorization)
    if credentials is not None:
        user = identity.authenticate(*credentials)
    user_id = user.id if user is not None else None
    with app[STORE_KEY].session() as session:
        readable = can_read(session, user_id, repo.id)
        pushable = service == "receive-pack" and can_push(session, user_id, repo.id)
    if service == "receive-pack":
        if user_id is None:
            raise _unauthorized()
        if pushable:
            return repo
        if readable:
            raise web.HTTPForbidden(text="Push access denied")
        raise web.HTTPNotFound(text="Repository not found")
    if readable:
        return repo
    if user_id is None:
        raise _unauthorized()
    raise web.HTTPNotFound(text="Repository not found")


async def _authorize_request(request: web.Request, service: str) -> Repository:
    return await asyncio.to_thread(
        _authorize,
        request.app,
        request.match_info["owner"],
        request.match_info["repo"],
        service,
        request.headers.get("Authorization"),
    )


def _service_env(request: web.Request) -> dict[str, str]:
    env = dict(os.environ)
    git_protocol = request.headers.get("Git-Protocol")
    if git_protocol:
        env["GIT_PROTOCOL"] = git_protocol
    return env


async def _spawn(
    request: web.Request, repo: Repository, service: str, advertise_refs: bool
) -> asyncio.subprocess.Process:
    engine = VersionControlEngine.from_config(
        repo.disk_path, request.app[CONFIG_KEY].git_executable
    )
    argv = engine.service_command(service, stateless=True, advertise_refs=advertise_refs)
    try:
        return await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if not advertise_refs else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=_service_env(request),
        )
    except OSError as e:
        logger.error("Unable to start %s for %s: %s", service, repo.name, e)
        raise web.HTTPInternalServerError(text="Unable to start git service") from e


async def _log_stderr(process: asyncio.subprocess.Process, service: str) -> None:
    assert process.stderr is not None
    async for line in process.stderr:
        logger.debug("%s: %s", service, line.decode("utf-8", "replace").rstrip())


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        logger.info("Killing git service (pid %d)", process.pid)
        process.kill()
    await process.wait()


async def _stream_output(
    response: web.StreamResponse,
    process: asyncio.subprocess.Process,
    service: str,
) -> int:
    """Forward process stdout to response; kill the process if that fails."""
    assert process.stdout is not None
    stderr_task = asyncio.create_task(_log_stderr(process, service))
    try:
        while True:
            data = await process.stdout.read(CHUNK_SIZE)
            if not data:
                break
            await response.write(data)
        returncode = await process.wait()
    finally:
        # Client went away, or the handler was cancelled.
        await _kill(process)
        await stderr_task
    if returncode != 0:
        logger.warning("%s exited with status %d", service, returncode)
    return returncode


async def get_info_refs(request: web.Request) -> web.StreamResponse:
    """Handle request for /info/refs.

    Args:
      request: aiohttp request object
    Returns: Response with the ref advertisement of the requested service
    """
    try:
        service = parse_service_name(request.query.get("service"))
    except InvalidServiceRequest as e:
        raise web.HTTPBadRequest(text="Invalid service") from e
    repo = await _authorize_request(request, service)
    process = await _spawn(request, repo, service, advertise_refs=True)
    headers = {"Content-Type": f"application/x-git-{service}-advertisement"}
    headers.update(NO_CACHE_HEADERS)
    response = web.StreamResponse(status=200, headers=headers)
    try:
        await response.prepare(request)
        await response.write(advertisement_header(service))
    except BaseException:
        await _kill(process)
        raise
    await _stream_output(response, process, service)
    await response.write_eof()
    return response


async def _feed_stdin(request: web.Request, process: asyncio.subprocess.Process) -> None:
    """Copy the request body to process stdin, then close stdin."""
    stdin = process.stdin
    assert stdin is not None
    decompressor = None
    if request.headers.get("Content-Encoding", "") == "gzip":
        decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
    try:
        async for chunk in request.content.iter_chunked(CHUNK_SIZE):
            if decompressor is not None:
                chunk = decompressor.decompress(chunk)
            stdin.write(chunk)
            await stdin.drain()
        if decompressor is not None:
            stdin.write(decompressor.flush())
            await stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        # The process stopped reading; whatever it wrote is still relayed.
        logger.debug("git service closed its input early")
    finally:
        stdin.close()


async def handle_service_request(request: web.Request) -> web.StreamResponse:
    """Handle a stateless RPC request of git-upload-pack or git-receive-pack.

    Args:
      request: aiohttp request object
    Returns: Response with the output of the service
    """
    service = parse_service_name(request.match_info["service"])
    repo = await _authorize_request(request, service)
    scheduler = request.app.get(SCHEDULER_KEY)
    before = None
    if service == "receive-pack" and scheduler is not None:
        before = await asyncio.to_thread(scheduler.snapshot, repo.disk_path)
    process = await _spawn(request, repo, service, advertise_refs=False)
    feeder = asyncio.create_task(_feed_stdin(request, process))
    headers = {"Content-Type": f"application/x-git-{service}-result"}
    headers.update(NO_CACHE_HEADERS)
    response = web.StreamResponse(status=200, headers=headers)
    try:
        await response.prepare(request)
        await _stream_output(response, process, service)
    finally:
        if not feeder.done():
            feeder.cancel()
        await asyncio.gather(feeder, return_exceptions=True)
        await _kill(process)
        if before is not None:
            assert scheduler is not None
            scheduler.schedule(repo.id, repo.disk_path, before)
    await response.write_eof()
    return response


def create_app(
    store: IndexStore,
    config: GatewayConfig,
    scheduler: IndexScheduler | None = None,
    identity: IdentityProvider | None = None,
) -> web.Application:
    """Create an aiohttp application serving all repositories over smart HTTP.

    Args:
      store: Store with users, repositories and permissions
      config: Gateway configuration
      scheduler: Scheduler notified after every receive-pack, if any
      identity: Identity provider; defaults to one backed by store
    Returns: Configured aiohttp Application
    """
    app = web.Application()
    app[STORE_KEY] = store
    app[CONFIG_KEY] = config
    app[IDENTITY_KEY] = identity or IdentityProvider(store)
    if scheduler is not None:
        app[SCHEDULER_KEY] = scheduler
    app.router.add_get("/{owner}/{repo}/info/refs", get_info_refs)
    app.router.add_post(
        "/{owner}/{repo}/{service:git-upload-pack|git-receive-pack}",
        handle_service_request,
    )
    return app


class GatewayHTTPServer:
    """Runs the smart HTTP application on a TCP socket."""

    def __init__(self, app: web.Application, host: str, port: int) -> None:
        self.app = app
        self.host = host
        self.port = port
        self._runner: web.AppRunner | None = None

    @property
    def address(self) -> tuple[str, int]:
        if self._runner is None or not self._runner.addresses:
            raise RuntimeError("HTTP server is not running")
        return self._runner.addresses[0][:2]

    async def start(self) -> None:
        if self._runner is not None:
            raise RuntimeError("HTTP server is already running")
        runner = web.AppRunner(self.app)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        await site.start()
        self._runner = runner
        logger.info("Listening for HTTP connections on %s:%d", *self.address)

    async def stop(self) -> None:
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        logger.info("HTTP server stopped")
