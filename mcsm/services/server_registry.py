import asyncio
import logging
import os
import re
import shutil
import uuid
import zipfile
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

import psutil

from ..config import Settings, settings as default_settings
from ..errors import (
    AlreadyRunning,
    BadRequest,
    ConfigCorrupt,
    ConflictError,
    NotFoundError,
    NotRunning,
    QueryDisabled,
    RestartTimeout,
    ServerBusy,
    ServiceError,
)
from ..models import (
    Edition,
    PropertiesDocument,
    QueryStatus,
    ServerRecord,
    ServerState,
    ServerSummary,
    utcnow,
)
from .config_store import ConfigStore
from .launcher import LaunchedProcess, ProcessLauncher, read_pid_file
from .liveness import LivenessProber
from .metadata_service import MetadataService
from .player_lists import write_empty_lists
from .properties_codec import (
    DEFAULT_QUERY_PORT,
    DEFAULT_RCON_PORT,
    force_properties,
    load_property_info,
    parse_properties,
    sign_eula,
    update_properties,
)
from .rcon_client import RconClient

PROPERTIES_FILE = "server.properties"
EULA_FILE = "eula.txt"
STOP_COMMAND = "stop"
MAX_POLL_INTERVAL = 2.0

_NAME_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_ .-]{0,63}$")
_VERSION_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,31}$")


@dataclass
class RuntimeHandle:
    server_id: str
    launched: LaunchedProcess

    @property
    def pid(self) -> int:
        return self.launched.pid

    @property
    def alive(self) -> bool:
        return self.launched.alive


class ServerRegistry:
    """Owns every managed server: its persisted record and, while it runs, its process handle.

    Lifecycle operations on one server id are serialized with a per-id lock.
    Servers that were already running when the manager started have no
    handle; reconciliation marks them as believed running instead.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[ConfigStore] = None,
        launcher: Optional[ProcessLauncher] = None,
        rcon: Optional[RconClient] = None,
        prober: Optional[LivenessProber] = None,
        metadata: Optional[MetadataService] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.store = store or ConfigStore(settings=self.settings)
        self.launcher = launcher or ProcessLauncher(self.settings)
        self.rcon = rcon or RconClient(self.settings)
        self.prober = prober or LivenessProber(self.settings)
        self.metadata = metadata or MetadataService(self.settings)
        self.log = logging.getLogger(__name__)

        self._handles: Dict[str, RuntimeHandle] = {}
        self._believed_running: set[str] = set()
        self._transitions: Dict[str, ServerState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # Queries

    def state(self, server_id: str) -> ServerState:
        transition = self._transitions.get(server_id)
        if transition is not None:
            return transition
        handle = self._handles.get(server_id)
        if handle is not None and handle.alive:
            return ServerState.RUNNING
        if server_id in self._believed_running:
            return ServerState.RUNNING
        return ServerState.STOPPED

    def believed_running(self) -> set[str]:
        return set(self._believed_running)

    def has_handle(self, server_id: str) -> bool:
        handle = self._handles.get(server_id)
        return handle is not None and handle.alive

    async def list_servers(self) -> list[ServerSummary]:
        records = await self.store.load()
        return [ServerSummary(server=record, state=self.state(record.id)) for record in records]

    async def get_server(self, server_id: str) -> ServerSummary:
        record = await self.store.get(server_id)
        return ServerSummary(server=record, state=self.state(server_id))

    async def query(self, server_id: str) -> QueryStatus:
        record = await self.store.get(server_id)
        return await self._query_record(record)

    async def is_running(self, server_id: str) -> bool:
        record = await self.store.get(server_id)
        return await self._is_running_record(record)

    def console(self, server_id: str, lines: int = 100) -> list[str]:
        handle = self._handles.get(server_id)
        if handle is None:
            return []
        output = list(handle.launched.output)
        return output[-lines:] if lines > 0 else output

    # Provisioning

    async def create(self, edition: str, version: str, name: str) -> ServerRecord:
        edition_value = self._parse_edition(edition)
        self._validate("version", version, _VERSION_RE)
        self._validate("name", name, _NAME_RE)
        self.log.info('Creating new server "%s" with edition/version %s/%s', name, edition_value.value, version)

        server_id = uuid.uuid4().hex
        slug = f"{name}-{edition_value.value}-{version}"
        directory = os.path.join(self.settings.servers_root, slug)
        binary_file = f"{slug}.jar"

        try:
            os.makedirs(self.settings.servers_root, exist_ok=True)
            os.mkdir(directory)
        except FileExistsError as exc:
            raise ConflictError(f"Path already exists: {directory}") from exc
        except OSError as exc:
            raise ServiceError(f"Failed to create server directory: {exc}") from exc

        # No rollback from here on: a failed step leaves the directory for the operator to inspect.
        url = await self.metadata.resolve_download_url(edition_value, version)
        await self.metadata.download_jar(url, os.path.join(directory, binary_file))

        # First run generates eula.txt and server.properties, then exits.
        await self.launcher.launch(directory, binary_file, wait=True)

        await self._rewrite_properties(directory)
        await asyncio.to_thread(write_empty_lists, directory)
        await self._sign_eula(directory)

        record = ServerRecord(
            id=server_id,
            name=name,
            edition=edition_value,
            game_version=version,
            directory=directory,
            binary_file=binary_file,
        )
        await self.store.add(record)
        self.log.info("Server %s created in %s", server_id, directory)
        return record

    async def import_server(
        self, edition: str, version: str, name: str, directory: str, binary_file: str
    ) -> ServerRecord:
        edition_value = self._parse_edition(edition)
        self._validate("version", version, _VERSION_RE)
        self._validate("name", name, _NAME_RE)
        directory = os.path.abspath(directory)
        self.log.info("Importing server %s from %s", name, directory)

        if os.path.basename(binary_file) != binary_file:
            raise BadRequest("Binary file must be a plain file name")
        if not os.path.isfile(os.path.join(directory, binary_file)):
            raise NotFoundError(f"Path does not exist: {os.path.join(directory, binary_file)}")

        record = ServerRecord(
            id=uuid.uuid4().hex,
            name=name,
            edition=edition_value,
            game_version=version,
            directory=directory,
            binary_file=binary_file,
        )
        await self.store.add(record)
        if os.path.exists(os.path.join(directory, PROPERTIES_FILE)):
            await self._rewrite_properties(directory)
        return record

    async def remove(self, server_id: str) -> None:
        record = await self.store.get(server_id)
        self.log.info("Removing server %s", server_id)
        async with self._lock_for(server_id):
            if await self._is_running_record(record):
                raise ServerBusy("Stop the server before deleting!")
            await asyncio.to_thread(self._remove_tree, record.directory)
            await self.store.remove(server_id)
            self._handles.pop(server_id, None)
            self._believed_running.discard(server_id)
        self._locks.pop(server_id, None)

    # Lifecycle

    async def start(self, server_id: str) -> ServerRecord:
        record = await self.store.get(server_id)
        async with self._lock_for(server_id):
            return await self._start_locked(record)

    async def stop(self, server_id: str) -> str:
        record = await self.store.get(server_id)
        async with self._lock_for(server_id):
            return await self._stop_locked(record)

    async def restart(self, server_id: str) -> ServerRecord:
        record = await self.store.get(server_id)
        self.log.info("Restarting server %s", server_id)
        async with self._lock_for(server_id):
            handle = self._handles.get(server_id)
            if handle is not None:
                pid: Optional[int] = handle.pid
                process = handle.launched.process
            else:
                pid = await asyncio.to_thread(read_pid_file, record.directory)
                process = None
            await self._stop_locked(record)
            await self._wait_for_exit(pid, process)
            return await self._start_locked(record)

    async def reconcile_on_startup(self) -> set[str]:
        """Probe every persisted server and remember which ones answer."""
        try:
            records = await self.store.load()
        except ConfigCorrupt as exc:
            self.log.warning("Skipping reconciliation: %s", exc.message)
            return set()
        await asyncio.gather(*(self._reconcile_one(record) for record in records))
        return self.believed_running()

    async def shutdown(self) -> None:
        tasks: list[asyncio.Task] = []
        for handle in self._handles.values():
            tasks.extend(handle.launched.pumps)
            if handle.launched.exit_task is not None:
                tasks.append(handle.launched.exit_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # Properties

    async def read_properties(self, server_id: str) -> PropertiesDocument:
        record = await self.store.get(server_id)
        properties = await self._read_properties_map(record.directory)
        info = await asyncio.to_thread(load_property_info)
        return PropertiesDocument(properties=properties, info=info, server=record)

    async def write_properties(self, server_id: str, text: str) -> None:
        record = await self.store.get(server_id)
        self.log.info("Writing server.properties for %s", server_id)
        path = os.path.join(record.directory, PROPERTIES_FILE)
        try:
            await asyncio.to_thread(_write_text, path, force_properties(text))
        except OSError as exc:
            raise ServiceError(f"Failed to write server.properties: {exc}") from exc

    async def archive(self, server_id: str) -> str:
        record = await self.store.get(server_id)
        self.log.info("Packaging server %s for download", server_id)
        stamp = datetime.now().strftime("%Y.%m.%d-%H.%M.%S")
        base_name = os.path.join(self.settings.archive_root, f"{record.name}-{record.game_version}-{stamp}")
        try:
            os.makedirs(self.settings.archive_root, exist_ok=True)
            return await asyncio.to_thread(
                shutil.make_archive, base_name, "zip", root_dir=record.directory
            )
        except OSError as exc:
            raise ServiceError(f"Failed to package server: {exc}") from exc

    async def restore_world(self, server_id: str, filename: str) -> str:
        """Unpack an uploaded world zip from the server directory and make it the active level."""
        record = await self.store.get(server_id)
        if os.path.basename(filename) != filename or not filename.lower().endswith(".zip"):
            raise BadRequest("World upload must be a .zip file inside the server directory")
        world_name = filename[: -len(".zip")]
        self._validate("world name", world_name, _NAME_RE)
        self.log.info('Unzipping uploaded world "%s" to server %s', filename, server_id)

        async with self._lock_for(server_id):
            if await self._is_running_record(record):
                raise ServerBusy("Stop the server before restoring a world!")
            archive_path = os.path.join(record.directory, filename)
            if not os.path.isfile(archive_path):
                raise NotFoundError(f"Path does not exist: {archive_path}")
            if os.path.exists(os.path.join(record.directory, world_name)):
                raise ConflictError("Path already exists!")

            text = await self._read_file(record.directory, PROPERTIES_FILE)
            await asyncio.to_thread(_extract_world, archive_path, record.directory)
            updated = force_properties(update_properties(text, {"level-name": world_name}))
            await self._write_file(record.directory, PROPERTIES_FILE, updated)
        return world_name

    # Internals

    async def _start_locked(self, record: ServerRecord) -> ServerRecord:
        server_id = record.id
        if self.has_handle(server_id):
            raise AlreadyRunning("Server already running!")
        if server_id in self._believed_running:
            if await self._probe_alive(record):
                raise AlreadyRunning("Server already running!")
            self._believed_running.discard(server_id)

        self.log.info("Starting server %s", server_id)
        self._transitions[server_id] = ServerState.STARTING
        try:
            await self._rewrite_properties(record.directory)
            launched = await self.launcher.launch(
                record.directory,
                record.binary_file,
                wait=False,
                on_exit=self._exit_callback(server_id),
            )
        finally:
            self._transitions.pop(server_id, None)
        self._handles[server_id] = RuntimeHandle(server_id=server_id, launched=launched)

        try:
            record = await self.store.update(server_id, last_accessed_at=utcnow())
        except ServiceError as exc:
            self.log.warning("Could not update last access for %s: %s", server_id, exc.message)
        return record

    async def _stop_locked(self, record: ServerRecord) -> str:
        server_id = record.id
        has_evidence = (
            self.has_handle(server_id)
            or server_id in self._believed_running
            or await self._probe_alive(record)
        )
        if not has_evidence:
            raise NotRunning("Server not running!")

        self.log.info("Stopping server %s", server_id)
        self._transitions[server_id] = ServerState.STOPPING
        try:
            properties = await self._read_properties_map(record.directory)
            reply = await self.rcon.send_command(
                properties.get("server-ip", ""),
                _int_property(properties, "rcon.port", DEFAULT_RCON_PORT),
                properties.get("rcon.password", ""),
                STOP_COMMAND,
            )
        finally:
            self._transitions.pop(server_id, None)

        self.log.info("RCON reply from server %s: %s", server_id, reply)
        self._handles.pop(server_id, None)
        self._believed_running.discard(server_id)
        return reply

    async def _wait_for_exit(
        self, pid: Optional[int], process: Optional[asyncio.subprocess.Process]
    ) -> None:
        timeout = self.settings.restart_timeout
        if process is not None:
            try:
                await asyncio.wait_for(process.wait(), timeout)
            except asyncio.TimeoutError as exc:
                raise RestartTimeout(f"Process [{pid}] did not exit within {timeout}s") from exc
            self.log.info("Process [%s] has exited", pid)
            return

        if pid is None:
            self.log.warning("No process id recorded; starting again without waiting")
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        delay = self.settings.restart_poll_interval
        while _pid_alive(pid):
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise RestartTimeout(f"Process [{pid}] did not exit within {timeout}s")
            self.log.debug("Waiting for process [%s] to exit...", pid)
            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * 2, MAX_POLL_INTERVAL)
        self.log.info("Process [%s] has exited", pid)

    def _exit_callback(self, server_id: str):
        def on_exit(launched: LaunchedProcess, exit_code: int) -> None:
            handle = self._handles.get(server_id)
            if handle is not None and handle.launched is launched:
                del self._handles[server_id]
            if exit_code != 0:
                self.log.warning("Server %s exited abnormally with code %s", server_id, exit_code)
            else:
                self.log.info("Server %s exited", server_id)

        return on_exit

    async def _reconcile_one(self, record: ServerRecord) -> None:
        try:
            status = await self._query_record(record)
        except ServiceError as exc:
            self.log.debug("Server %s believed stopped: %s", record.id, exc.message)
            self._believed_running.discard(record.id)
            return
        self._believed_running.add(record.id)
        self.log.info(
            "Server %s is online (%s/%s players)", record.id, status.players, status.max_players
        )

    async def _query_record(self, record: ServerRecord) -> QueryStatus:
        properties = await self._read_properties_map(record.directory)
        if properties.get("enable-query", "").strip().lower() == "false":
            raise QueryDisabled(f"Query is disabled for server {record.id}")
        return await self.prober.probe(
            properties.get("server-ip", ""),
            _int_property(properties, "query.port", DEFAULT_QUERY_PORT),
        )

    async def _is_running_record(self, record: ServerRecord) -> bool:
        if self.has_handle(record.id):
            return True
        return await self._probe_alive(record)

    async def _probe_alive(self, record: ServerRecord) -> bool:
        try:
            await self._query_record(record)
        except ServiceError as exc:
            self.log.debug("Probe of %s failed: %s", record.id, exc.message)
            return False
        return True

    async def _read_properties_map(self, directory: str) -> Dict[str, str]:
        return parse_properties(await self._read_file(directory, PROPERTIES_FILE))

    async def _rewrite_properties(self, directory: str) -> None:
        text = await self._read_file(directory, PROPERTIES_FILE)
        forced = force_properties(text)
        if forced != text:
            await self._write_file(directory, PROPERTIES_FILE, forced)

    async def _sign_eula(self, directory: str) -> None:
        self.log.info("Signing eula.txt in %s", directory)
        text = await self._read_file(directory, EULA_FILE)
        await self._write_file(directory, EULA_FILE, sign_eula(text))

    async def _read_file(self, directory: str, filename: str) -> str:
        path = os.path.join(directory, filename)
        try:
            return await asyncio.to_thread(_read_text, path)
        except FileNotFoundError as exc:
            raise NotFoundError(f"Missing {filename} file in {directory}") from exc
        except OSError as exc:
            raise ServiceError(f"Failed to read {filename}: {exc}") from exc

    async def _write_file(self, directory: str, filename: str, text: str) -> None:
        try:
            await asyncio.to_thread(_write_text, os.path.join(directory, filename), text)
        except OSError as exc:
            raise ServiceError(f"Failed to write {filename}: {exc}") from exc

    def _remove_tree(self, directory: str) -> None:
        target = os.path.realpath(directory)
        protected = {os.path.realpath(self.settings.servers_root), os.path.realpath(os.sep)}
        if target in protected:
            raise BadRequest(f"Refusing to delete {target}")
        if not os.path.exists(target):
            return
        try:
            shutil.rmtree(target)
        except OSError as exc:
            raise ServiceError(f"Failed to delete server data: {exc}") from exc

    def _lock_for(self, server_id: str) -> asyncio.Lock:
        return self._locks.setdefault(server_id, asyncio.Lock())

    def _parse_edition(self, edition: str) -> Edition:
        try:
            return Edition(edition.strip().lower())
        except ValueError as exc:
            raise BadRequest(f"Unsupported edition: {edition}") from exc

    def _validate(self, field: str, value: str, pattern: re.Pattern) -> None:
        if not pattern.match(value or ""):
            raise BadRequest(f"Invalid {field}: {value!r}")


def _int_property(properties: Dict[str, str], key: str, default: str) -> int:
    value = properties.get(key, "").strip() or default
    try:
        return int(value)
    except ValueError as exc:
        raise BadRequest(f"{key} must be a number, got {value!r}") from exc


def _pid_alive(pid: int) -> bool:
    try:
        if not psutil.pid_exists(pid):
            return False
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def _extract_world(archive_path: str, directory: str) -> None:
    root = os.path.realpath(directory)
    try:
        with zipfile.ZipFile(archive_path, "r") as archive:
            for info in archive.infolist():
                target = os.path.realpath(os.path.join(root, info.filename))
                if target != root and not target.startswith(root + os.sep):
                    raise BadRequest(f"Archive entry escapes the server directory: {info.filename}")
            archive.extractall(root)
    except zipfile.BadZipFile as exc:
        raise BadRequest(f"Uploaded world is not a valid zip: {exc}") from exc
    except OSError as exc:
        raise ServiceError(f"Failed to unpack world: {exc}") from exc


def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8") as handle:
        return handle.read()


def _write_text(path: str, text: str) -> None:
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(text)
