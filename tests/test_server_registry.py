import asyncio
import dataclasses
import json
import os
import zipfile
from unittest.mock import patch

import pytest

from mcsm.errors import (
    AlreadyRunning,
    BadRequest,
    ConflictError,
    LaunchFailed,
    NotFoundError,
    NotRunning,
    QueryDisabled,
    RestartTimeout,
    ServerBusy,
    Unreachable,
)
from mcsm.models import QueryStatus, ServerState
from mcsm.services.launcher import write_pid_file
from mcsm.services.properties_codec import parse_properties

ONLINE = QueryStatus(players=1, max_players=20, motd="A Minecraft Server", version="1.15.2")


def read_properties_file(directory):
    with open(os.path.join(directory, "server.properties"), encoding="utf-8") as handle:
        return parse_properties(handle.read())


def set_property(directory, key, value):
    path = os.path.join(directory, "server.properties")
    with open(path, encoding="utf-8") as handle:
        lines = handle.read().splitlines()
    lines = [f"{key}={value}" if line.startswith(f"{key}=") else line for line in lines]
    with open(path, "w", encoding="utf-8") as handle:
        handle.write("\n".join(lines) + "\n")


class TestCreate:
    @pytest.mark.asyncio
    async def test_vanilla_server_is_provisioned(self, registry, store, launcher, test_settings):
        record = await registry.create("vanilla", "1.15.2", "test")

        assert record.directory == os.path.join(test_settings.servers_root, "test-vanilla-1.15.2")
        assert record.binary_file == "test-vanilla-1.15.2.jar"
        assert os.path.isfile(os.path.join(record.directory, record.binary_file))
        assert launcher.launches == [(record.directory, record.binary_file, True)]

        properties = read_properties_file(record.directory)
        assert properties["enable-query"] == "true"
        assert properties["enable-rcon"] == "true"
        assert len(properties["rcon.password"]) == 12
        assert properties["motd"] == "A Minecraft Server"

        with open(os.path.join(record.directory, "eula.txt"), encoding="utf-8") as handle:
            assert parse_properties(handle.read())["eula"] == "true"
        for name in ("whitelist.json", "ops.json", "banned-players.json", "banned-ips.json"):
            with open(os.path.join(record.directory, name), encoding="utf-8") as handle:
                assert json.load(handle) == []

        assert [r.id for r in await store.load()] == [record.id]
        assert registry.state(record.id) == ServerState.STOPPED

    @pytest.mark.asyncio
    async def test_same_name_twice_conflicts(self, registry, store):
        await registry.create("vanilla", "1.15.2", "test")

        with pytest.raises(ConflictError):
            await registry.create("vanilla", "1.15.2", "test")

        assert len(await store.load()) == 1

    @pytest.mark.asyncio
    async def test_unknown_edition_is_rejected(self, registry, launcher):
        with pytest.raises(BadRequest):
            await registry.create("forge", "1.15.2", "test")
        assert launcher.launches == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["../escape", "a/b", ""])
    async def test_unsafe_names_are_rejected(self, registry, name):
        with pytest.raises(BadRequest):
            await registry.create("paper", "1.16.5", name)

    @pytest.mark.asyncio
    async def test_missing_properties_leaves_no_record(self, registry, store, launcher, test_settings):
        launcher.first_run_files = False

        with pytest.raises(NotFoundError):
            await registry.create("paper", "1.16.5", "bare")

        assert await store.load() == []
        # partial state stays on disk for the operator
        assert os.path.isdir(os.path.join(test_settings.servers_root, "bare-paper-1.16.5"))

    @pytest.mark.asyncio
    async def test_first_run_failure_propagates(self, registry, store, launcher):
        async def failing_launch(*args, **kwargs):
            raise LaunchFailed("Child process [1] exited with code 1")

        launcher.launch = failing_launch
        with pytest.raises(LaunchFailed):
            await registry.create("vanilla", "1.15.2", "broken")
        assert await store.load() == []


class TestImport:
    @pytest.mark.asyncio
    async def test_import_existing_directory(self, registry, store, tmp_path):
        directory = tmp_path / "legacy"
        directory.mkdir()
        (directory / "server.jar").write_bytes(b"jar")
        (directory / "server.properties").write_text("enable-query=false\n", encoding="utf-8")

        record = await registry.import_server("vanilla", "1.12.2", "legacy", str(directory), "server.jar")

        assert record.directory == str(directory)
        assert (await store.get(record.id)).binary_file == "server.jar"
        properties = read_properties_file(str(directory))
        assert properties["enable-query"] == "true"
        assert properties["rcon.password"]

    @pytest.mark.asyncio
    async def test_import_missing_binary(self, registry, tmp_path):
        with pytest.raises(NotFoundError):
            await registry.import_server("vanilla", "1.12.2", "legacy", str(tmp_path), "server.jar")

    @pytest.mark.asyncio
    async def test_import_claimed_directory(self, registry):
        record = await registry.create("vanilla", "1.15.2", "test")

        with pytest.raises(ConflictError):
            await registry.import_server(
                "vanilla", "1.15.2", "again", record.directory, record.binary_file
            )


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_records_handle(self, registry, store, launcher):
        record = await registry.create("vanilla", "1.15.2", "test")

        started = await registry.start(record.id)

        assert launcher.spawned == 1
        assert registry.state(record.id) == ServerState.RUNNING
        assert started.last_accessed_at >= record.last_accessed_at
        assert await registry.is_running(record.id) is True

    @pytest.mark.asyncio
    async def test_start_twice_is_rejected(self, registry, launcher):
        record = await registry.create("vanilla", "1.15.2", "test")
        await registry.start(record.id)

        with pytest.raises(AlreadyRunning):
            await registry.start(record.id)
        assert launcher.spawned == 1

    @pytest.mark.asyncio
    async def test_start_unknown_id(self, registry):
        with pytest.raises(NotFoundError):
            await registry.start("missing")

    @pytest.mark.asyncio
    async def test_start_reapplies_forced_properties(self, registry):
        record = await registry.create("vanilla", "1.15.2", "test")
        set_property(record.directory, "enable-rcon", "false")

        await registry.start(record.id)

        assert read_properties_file(record.directory)["enable-rcon"] == "true"

    @pytest.mark.asyncio
    async def test_start_refuses_server_found_by_reconciliation(self, registry, prober, launcher):
        record = await registry.create("vanilla", "1.15.2", "test")
        prober.probe.side_effect = None
        prober.probe.return_value = ONLINE
        await registry.reconcile_on_startup()

        with pytest.raises(AlreadyRunning):
            await registry.start(record.id)
        assert launcher.spawned == 0

    @pytest.mark.asyncio
    async def test_stop_without_evidence_skips_rcon(self, registry, rcon):
        record = await registry.create("vanilla", "1.15.2", "test")

        with pytest.raises(NotRunning):
            await registry.stop(record.id)
        rcon.send_command.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_sends_stop_over_rcon(self, registry, rcon):
        record = await registry.create("vanilla", "1.15.2", "test")
        password = read_properties_file(record.directory)["rcon.password"]
        await registry.start(record.id)

        reply = await registry.stop(record.id)

        assert reply == "Stopping the server"
        rcon.send_command.assert_awaited_once_with("", 25575, password, "stop")
        assert registry.state(record.id) == ServerState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_uses_configured_rcon_port(self, registry, rcon):
        record = await registry.create("vanilla", "1.15.2", "test")
        set_property(record.directory, "rcon.port", "25580")
        set_property(record.directory, "server-ip", "127.0.0.1")
        await registry.start(record.id)

        await registry.stop(record.id)

        args = rcon.send_command.await_args.args
        assert args[0] == "127.0.0.1"
        assert args[1] == 25580

    @pytest.mark.asyncio
    async def test_exit_removes_handle(self, registry, launcher):
        record = await registry.create("vanilla", "1.15.2", "test")
        await registry.start(record.id)
        launched = launcher.processes[-1]

        launched.process.returncode = 1
        launcher.exit_callbacks[-1](launched, 1)

        assert registry.state(record.id) == ServerState.STOPPED
        assert registry.has_handle(record.id) is False

    @pytest.mark.asyncio
    async def test_stale_exit_keeps_newer_handle(self, registry, launcher):
        record = await registry.create("vanilla", "1.15.2", "test")
        await registry.start(record.id)
        first = launcher.processes[-1]
        first_exit = launcher.exit_callbacks[-1]
        await registry.stop(record.id)
        first.process.returncode = 0
        await registry.start(record.id)

        first_exit(first, 0)

        assert registry.state(record.id) == ServerState.RUNNING

    @pytest.mark.asyncio
    async def test_restart_waits_for_owned_child(self, registry, launcher, rcon):
        record = await registry.create("vanilla", "1.15.2", "test")
        await registry.start(record.id)
        first = launcher.processes[-1]

        await registry.restart(record.id)

        first.process.wait.assert_awaited()
        rcon.send_command.assert_awaited_once()
        assert launcher.spawned == 2
        assert registry.state(record.id) == ServerState.RUNNING

    @pytest.mark.asyncio
    async def test_restart_times_out(self, registry, launcher, test_settings):
        record = await registry.create("vanilla", "1.15.2", "test")
        await registry.start(record.id)

        async def never_exits():
            await asyncio.Event().wait()

        launcher.processes[-1].process.wait = never_exits
        registry.settings = dataclasses.replace(test_settings, restart_timeout=0.05)

        with pytest.raises(RestartTimeout):
            await registry.restart(record.id)
        assert launcher.spawned == 1

    @pytest.mark.asyncio
    async def test_restart_polls_sidecar_pid(self, registry, prober, launcher):
        record = await registry.create("vanilla", "1.15.2", "test")
        write_pid_file(record.directory, 31337)
        prober.probe.side_effect = None
        prober.probe.return_value = ONLINE
        await registry.reconcile_on_startup()
        prober.probe.side_effect = Unreachable("down")

        alive = iter([True, True, False])
        with patch("mcsm.services.server_registry._pid_alive", side_effect=lambda pid: next(alive)) as pid_alive:
            await registry.restart(record.id)

        assert pid_alive.call_args.args == (31337,)
        assert launcher.spawned == 1

    @pytest.mark.asyncio
    async def test_concurrent_starts_spawn_once(self, registry, launcher):
        record = await registry.create("vanilla", "1.15.2", "test")

        results = await asyncio.gather(
            registry.start(record.id), registry.start(record.id), return_exceptions=True
        )

        assert launcher.spawned == 1
        assert sum(isinstance(result, AlreadyRunning) for result in results) == 1


class TestRemove:
    @pytest.mark.asyncio
    async def test_remove_refused_while_online(self, registry, store, prober):
        record = await registry.create("vanilla", "1.15.2", "test")
        prober.probe.side_effect = None
        prober.probe.return_value = ONLINE

        with pytest.raises(ServerBusy):
            await registry.remove(record.id)
        assert os.path.isdir(record.directory)
        assert len(await store.load()) == 1

    @pytest.mark.asyncio
    async def test_remove_refused_with_handle(self, registry):
        record = await registry.create("vanilla", "1.15.2", "test")
        await registry.start(record.id)

        with pytest.raises(ServerBusy):
            await registry.remove(record.id)

    @pytest.mark.asyncio
    async def test_remove_deletes_tree_and_record(self, registry, store):
        record = await registry.create("vanilla", "1.15.2", "test")

        await registry.remove(record.id)

        assert not os.path.exists(record.directory)
        assert await store.load() == []
        with pytest.raises(NotFoundError):
            await registry.remove(record.id)


class TestQuery:
    @pytest.mark.asyncio
    async def test_query_disabled_never_probes(self, registry, prober):
        record = await registry.create("vanilla", "1.15.2", "test")
        set_property(record.directory, "enable-query", "false")

        with pytest.raises(QueryDisabled):
            await registry.query(record.id)
        prober.probe.assert_not_awaited()
        assert await registry.is_running(record.id) is False

    @pytest.mark.asyncio
    async def test_query_returns_status(self, registry, prober):
        record = await registry.create("vanilla", "1.15.2", "test")
        prober.probe.side_effect = None
        prober.probe.return_value = ONLINE

        status = await registry.query(record.id)

        assert status.players == 1
        prober.probe.assert_awaited_once_with("", 25565)

    @pytest.mark.asyncio
    async def test_query_unreachable(self, registry):
        record = await registry.create("vanilla", "1.15.2", "test")

        with pytest.raises(Unreachable):
            await registry.query(record.id)


class TestReconcile:
    @pytest.mark.asyncio
    async def test_only_reachable_servers_are_marked(self, registry, prober):
        alpha = await registry.create("vanilla", "1.15.2", "alpha")
        beta = await registry.create("vanilla", "1.15.2", "beta")
        set_property(beta.directory, "query.port", "25566")

        async def probe(host, port):
            if port == 25565:
                return ONLINE
            raise Unreachable("down")

        prober.probe.side_effect = probe

        online = await registry.reconcile_on_startup()

        assert online == {alpha.id}
        assert registry.state(alpha.id) == ServerState.RUNNING
        assert registry.state(beta.id) == ServerState.STOPPED

    @pytest.mark.asyncio
    async def test_corrupt_config_does_not_raise(self, registry, test_settings):
        os.makedirs(os.path.dirname(test_settings.config_path), exist_ok=True)
        with open(test_settings.config_path, "w", encoding="utf-8") as handle:
            handle.write("{not json")

        assert await registry.reconcile_on_startup() == set()

    @pytest.mark.asyncio
    async def test_believed_running_server_can_be_stopped(self, registry, prober, rcon):
        record = await registry.create("vanilla", "1.15.2", "test")
        prober.probe.side_effect = None
        prober.probe.return_value = ONLINE
        await registry.reconcile_on_startup()

        await registry.stop(record.id)

        rcon.send_command.assert_awaited_once()
        assert record.id not in registry.believed_running()


class TestProperties:
    @pytest.mark.asyncio
    async def test_read_properties_document(self, registry):
        record = await registry.create("vanilla", "1.15.2", "test")

        document = await registry.read_properties(record.id)

        assert document.server.id == record.id
        assert document.properties["enable-query"] == "true"
        assert "motd" in document.info

    @pytest.mark.asyncio
    async def test_write_properties_is_forced(self, registry):
        record = await registry.create("vanilla", "1.15.2", "test")

        await registry.write_properties(
            record.id, "motd=Hello\nenable-query=false\nrcon.password=keepme\n"
        )

        properties = read_properties_file(record.directory)
        assert properties["motd"] == "Hello"
        assert properties["enable-query"] == "true"
        assert properties["enable-rcon"] == "true"
        assert properties["rcon.password"] == "keepme"


class TestExtras:
    @pytest.mark.asyncio
    async def test_console_returns_recent_lines(self, registry, launcher):
        record = await registry.create("vanilla", "1.15.2", "test")
        assert registry.console(record.id) == []
        await registry.start(record.id)
        launcher.processes[-1].output.extend(["[Server thread/INFO]: Starting", "Done (3.2s)!"])

        assert registry.console(record.id, lines=1) == ["Done (3.2s)!"]

    @pytest.mark.asyncio
    async def test_archive_zips_directory(self, registry, test_settings):
        record = await registry.create("vanilla", "1.15.2", "test")

        path = await registry.archive(record.id)

        assert path.startswith(test_settings.archive_root)
        with zipfile.ZipFile(path) as archive:
            assert "server.properties" in archive.namelist()

    @pytest.mark.asyncio
    async def test_list_servers_with_state(self, registry):
        record = await registry.create("vanilla", "1.15.2", "test")
        await registry.start(record.id)

        summaries = await registry.list_servers()

        assert [(s.server.id, s.state) for s in summaries] == [(record.id, ServerState.RUNNING)]
        assert (await registry.get_server(record.id)).state == ServerState.RUNNING


class TestRestoreWorld:
    @staticmethod
    def write_world_zip(directory, filename, members):
        with zipfile.ZipFile(os.path.join(directory, filename), "w") as archive:
            for name, data in members.items():
                archive.writestr(name, data)

    @pytest.mark.asyncio
    async def test_unpacks_and_sets_level_name(self, registry):
        record = await registry.create("vanilla", "1.15.2", "test")
        self.write_world_zip(record.directory, "castle.zip", {"castle/level.dat": b"level"})

        assert await registry.restore_world(record.id, "castle.zip") == "castle"

        assert os.path.isfile(os.path.join(record.directory, "castle", "level.dat"))
        properties = read_properties_file(record.directory)
        assert properties["level-name"] == "castle"
        assert properties["enable-query"] == "true"

    @pytest.mark.asyncio
    async def test_existing_world_conflicts(self, registry):
        record = await registry.create("vanilla", "1.15.2", "test")
        os.mkdir(os.path.join(record.directory, "castle"))
        self.write_world_zip(record.directory, "castle.zip", {"castle/level.dat": b"level"})

        with pytest.raises(ConflictError):
            await registry.restore_world(record.id, "castle.zip")

    @pytest.mark.asyncio
    async def test_refused_while_running(self, registry):
        record = await registry.create("vanilla", "1.15.2", "test")
        self.write_world_zip(record.directory, "castle.zip", {"castle/level.dat": b"level"})
        await registry.start(record.id)

        with pytest.raises(ServerBusy):
            await registry.restore_world(record.id, "castle.zip")
        assert not os.path.exists(os.path.join(record.directory, "castle"))

    @pytest.mark.asyncio
    async def test_entries_outside_directory_are_rejected(self, registry):
        record = await registry.create("vanilla", "1.15.2", "test")
        self.write_world_zip(record.directory, "evil.zip", {"../../outside.txt": b"x"})

        with pytest.raises(BadRequest):
            await registry.restore_world(record.id, "evil.zip")
        assert read_properties_file(record.directory).get("level-name") != "evil"
        assert not os.path.exists(os.path.join(os.path.dirname(os.path.dirname(record.directory)), "outside.txt"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("filename", ["castle.tar", "../castle.zip", "missing.zip"])
    async def test_bad_filenames(self, registry, filename):
        record = await registry.create("vanilla", "1.15.2", "test")

        with pytest.raises((BadRequest, NotFoundError)):
            await registry.restore_world(record.id, filename)


class TestRepeatedKeys:
    @pytest.mark.asyncio
    async def test_written_properties_keep_query_enabled(self, registry, prober):
        record = await registry.create("vanilla", "1.15.2", "test")
        prober.probe.side_effect = None
        prober.probe.return_value = ONLINE

        await registry.write_properties(
            record.id, "enable-query=true\nmotd=x\nenable-query=false\nrcon.password=abc\n"
        )

        assert read_properties_file(record.directory)["enable-query"] == "true"
        assert (await registry.query(record.id)).players == 1
        with pytest.raises(ServerBusy):
            await registry.remove(record.id)
