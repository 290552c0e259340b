import asyncio
import json
import logging
import os
from datetime import datetime
from typing import Any, Optional

from ..errors import ServiceError
from ..models import (
    BannedIpEntry,
    BannedPlayerEntry,
    OpEntry,
    PlayerLists,
    WhitelistEntry,
)
from .config_store import ConfigStore
from .player_directory import PlayerDirectory
from .properties_codec import parse_properties

logger = logging.getLogger(__name__)

WHITELIST_FILE = "whitelist.json"
OPS_FILE = "ops.json"
BANNED_PLAYERS_FILE = "banned-players.json"
BANNED_IPS_FILE = "banned-ips.json"
LIST_FILES = (WHITELIST_FILE, OPS_FILE, BANNED_PLAYERS_FILE, BANNED_IPS_FILE)

BAN_SOURCE = "__McServerman__"
BAN_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S %z"
DEFAULT_OP_LEVEL = 4


def write_empty_lists(directory: str) -> None:
    for filename in LIST_FILES:
        _write_list(directory, filename, [])


def _read_list(directory: str, filename: str) -> list[dict[str, Any]]:
    path = os.path.join(directory, filename)
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError:
        return []
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to read %s: %s", path, exc)
        return []
    if not isinstance(data, list):
        logger.warning("Ignoring %s: expected a JSON array", path)
        return []
    return [entry for entry in data if isinstance(entry, dict)]


def _write_list(directory: str, filename: str, entries: list[dict[str, Any]]) -> None:
    path = os.path.join(directory, filename)
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(entries, handle, indent="\t")


class PlayerListService:
    """Whitelist, op and ban files that live beside each server jar."""

    def __init__(self, store: ConfigStore, directory: Optional[PlayerDirectory] = None) -> None:
        self.store = store
        self.directory = directory or PlayerDirectory()
        self._locks: dict[str, asyncio.Lock] = {}

    async def read_lists(self, server_id: str) -> PlayerLists:
        server_dir = await self._server_dir(server_id)
        whitelist, ops, banned_players, banned_ips = await asyncio.gather(
            *(asyncio.to_thread(_read_list, server_dir, name) for name in LIST_FILES)
        )
        return PlayerLists(
            whitelist=[WhitelistEntry.model_validate(entry) for entry in whitelist],
            ops=[OpEntry.model_validate(entry) for entry in ops],
            banned_players=[BannedPlayerEntry.model_validate(entry) for entry in banned_players],
            banned_ips=[BannedIpEntry.model_validate(entry) for entry in banned_ips],
        )

    async def whitelist_add(self, server_id: str, player: str) -> WhitelistEntry:
        logger.info("Adding player %s to whitelist for server %s", player, server_id)
        uuid = await self.directory.resolve_uuid(player)
        entry = WhitelistEntry(uuid=uuid, name=player)
        await self._append(server_id, WHITELIST_FILE, "uuid", entry.model_dump())
        return entry

    async def whitelist_remove(self, server_id: str, player_uuid: str) -> bool:
        logger.info("Removing player %s from whitelist for server %s", player_uuid, server_id)
        return await self._remove(server_id, WHITELIST_FILE, "uuid", player_uuid)

    async def op_add(self, server_id: str, player: str) -> OpEntry:
        logger.info("Adding player %s to ops for server %s", player, server_id)
        uuid = await self.directory.resolve_uuid(player)
        level = await self._op_level(server_id)
        entry = OpEntry(uuid=uuid, name=player, level=level)
        await self._append(server_id, OPS_FILE, "uuid", entry.model_dump(by_alias=True))
        return entry

    async def op_remove(self, server_id: str, player_uuid: str) -> bool:
        logger.info("Removing player %s from ops for server %s", player_uuid, server_id)
        return await self._remove(server_id, OPS_FILE, "uuid", player_uuid)

    async def ban_add(self, server_id: str, player: str, reason: str) -> BannedPlayerEntry:
        logger.info("Banning player %s from server %s", player, server_id)
        uuid = await self.directory.resolve_uuid(player)
        entry = BannedPlayerEntry(
            uuid=uuid,
            name=player,
            created=_ban_timestamp(),
            source=BAN_SOURCE,
            reason=reason,
        )
        await self._append(server_id, BANNED_PLAYERS_FILE, "uuid", entry.model_dump())
        return entry

    async def ban_remove(self, server_id: str, player_uuid: str) -> bool:
        logger.info("Unbanning player %s from server %s", player_uuid, server_id)
        return await self._remove(server_id, BANNED_PLAYERS_FILE, "uuid", player_uuid)

    async def ban_ip_add(self, server_id: str, ip: str, reason: str) -> BannedIpEntry:
        logger.info("Banning IP %s from server %s", ip, server_id)
        entry = BannedIpEntry(ip=ip, created=_ban_timestamp(), source=BAN_SOURCE, reason=reason)
        await self._append(server_id, BANNED_IPS_FILE, "ip", entry.model_dump())
        return entry

    async def ban_ip_remove(self, server_id: str, ip: str) -> bool:
        logger.info("Unbanning IP %s from server %s", ip, server_id)
        return await self._remove(server_id, BANNED_IPS_FILE, "ip", ip)

    async def _server_dir(self, server_id: str) -> str:
        record = await self.store.get(server_id)
        return record.directory

    async def _op_level(self, server_id: str) -> int:
        server_dir = await self._server_dir(server_id)
        path = os.path.join(server_dir, "server.properties")
        try:
            text = await asyncio.to_thread(_read_text, path)
        except OSError:
            return DEFAULT_OP_LEVEL
        try:
            return int(parse_properties(text).get("op-permission-level", DEFAULT_OP_LEVEL))
        except ValueError:
            return DEFAULT_OP_LEVEL

    async def _append(self, server_id: str, filename: str, key: str, entry: dict[str, Any]) -> None:
        server_dir = await self._server_dir(server_id)
        async with self._lock_for(server_id):
            entries = await asyncio.to_thread(_read_list, server_dir, filename)
            if any(existing.get(key) == entry[key] for existing in entries):
                return
            entries.append(entry)
            await self._save(server_dir, filename, entries)

    async def _remove(self, server_id: str, filename: str, key: str, value: str) -> bool:
        server_dir = await self._server_dir(server_id)
        async with self._lock_for(server_id):
            entries = await asyncio.to_thread(_read_list, server_dir, filename)
            kept = [entry for entry in entries if entry.get(key) != value]
            if len(kept) == len(entries):
                return False
            await self._save(server_dir, filename, kept)
            return True

    async def _save(self, server_dir: str, filename: str, entries: list[dict[str, Any]]) -> None:
        try:
            await asyncio.to_thread(_write_list, server_dir, filename, entries)
        except OSError as exc:
            raise ServiceError(f"Failed to write {filename}: {exc}") from exc

    def _lock_for(self, server_id: str) -> asyncio.Lock:
        return self._locks.setdefault(server_id, asyncio.Lock())


def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8") as handle:
        return handle.read()


def _ban_timestamp() -> str:
    return datetime.now().astimezone().strftime(BAN_TIMESTAMP_FORMAT)
