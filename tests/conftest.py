"""Shared fixtures: temporary settings and stand-ins for Java, RCON and the query port."""

import dataclasses
import os
from collections import deque
from unittest.mock import AsyncMock, Mock

import pytest

from mcsm.config import settings
from mcsm.errors import Unreachable
from mcsm.services.config_store import ConfigStore
from mcsm.services.launcher import LaunchedProcess
from mcsm.services.server_registry import ServerRegistry

VANILLA_PROPERTIES = (
    "#Minecraft server properties\n"
    "#Sat Apr 04 12:00:00 UTC 2020\n"
    "spawn-protection=16\n"
    "server-ip=\n"
    "enable-query=false\n"
    "enable-rcon=false\n"
    "rcon.password=\n"
    "query.port=25565\n"
    "motd=A Minecraft Server\n"
    "op-permission-level=4\n"
)

UNSIGNED_EULA = (
    "#By changing the setting below to TRUE you are indicating your agreement to our EULA.\n"
    "eula=false\n"
)


class FakeLauncher:
    """Records launches instead of spawning Java; wait mode emulates a first run."""

    def __init__(self, first_run_files: bool = True) -> None:
        self.first_run_files = first_run_files
        self.launches: list[tuple[str, str, bool]] = []
        self.processes: list[LaunchedProcess] = []
        self.exit_callbacks: list = []

    async def launch(self, directory, binary_file, wait=False, use_tuning_flags=None, on_exit=None):
        self.launches.append((directory, binary_file, wait))
        if wait and self.first_run_files:
            for name, text in (("server.properties", VANILLA_PROPERTIES), ("eula.txt", UNSIGNED_EULA)):
                path = os.path.join(directory, name)
                if not os.path.exists(path):
                    with open(path, "w", encoding="utf-8") as handle:
                        handle.write(text)

        process = Mock()
        process.returncode = 0 if wait else None
        process.pid = 4000 + len(self.launches)
        process.wait = AsyncMock(return_value=0)
        launched = LaunchedProcess(
            process=process,
            pid=process.pid,
            directory=directory,
            output=deque(maxlen=50),
        )
        self.processes.append(launched)
        self.exit_callbacks.append(on_exit)
        return launched

    @property
    def spawned(self) -> int:
        return sum(1 for _, _, wait in self.launches if not wait)


class FakeMetadata:
    def __init__(self) -> None:
        self.resolve_download_url = AsyncMock(return_value="https://example.invalid/server.jar")

    async def download_jar(self, url: str, dest_path: str) -> None:
        with open(dest_path, "wb") as handle:
            handle.write(b"PK\x03\x04")


@pytest.fixture
def test_settings(tmp_path):
    return dataclasses.replace(
        settings,
        config_path=str(tmp_path / "config" / "config.json"),
        servers_root=str(tmp_path / "mc-servers"),
        archive_root=str(tmp_path / "worlds"),
        use_tuning_flags=False,
        restart_timeout=1.0,
        restart_poll_interval=0.01,
    )


@pytest.fixture
def store(test_settings):
    return ConfigStore(settings=test_settings)


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def rcon():
    client = Mock()
    client.send_command = AsyncMock(return_value="Stopping the server")
    return client


@pytest.fixture
def prober():
    liveness = Mock()
    liveness.probe = AsyncMock(side_effect=Unreachable("no query response"))
    return liveness


@pytest.fixture
def metadata():
    return FakeMetadata()


@pytest.fixture
def registry(test_settings, store, launcher, rcon, prober, metadata):
    return ServerRegistry(
        settings=test_settings,
        store=store,
        launcher=launcher,
        rcon=rcon,
        prober=prober,
        metadata=metadata,
    )
