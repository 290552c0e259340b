from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Edition(str, Enum):
    VANILLA = "vanilla"
    PAPER = "paper"


class ServerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ServerRecord(CamelModel):
    id: str
    name: str = Field(..., min_length=1, max_length=64)
    edition: Edition
    game_version: str = Field(..., min_length=1, max_length=32)
    directory: str
    binary_file: str
    created_at: datetime = Field(default_factory=utcnow)
    last_accessed_at: datetime = Field(default_factory=utcnow)


class ConfigDocument(CamelModel):
    servers: list[ServerRecord] = Field(default_factory=list)


class ServerSummary(CamelModel):
    server: ServerRecord
    state: ServerState


class QueryStatus(CamelModel):
    players: int
    max_players: int
    motd: str
    version: Optional[str] = None
    map: Optional[str] = None


class PropertiesDocument(CamelModel):
    properties: dict[str, str]
    info: dict[str, Any]
    server: ServerRecord


class WhitelistEntry(BaseModel):
    uuid: str
    name: str


class OpEntry(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    uuid: str
    name: str
    level: int = 4
    bypasses_player_limit: bool = False


class BannedPlayerEntry(BaseModel):
    uuid: str
    name: str
    created: str
    source: str
    expires: str = "forever"
    reason: str


class BannedIpEntry(BaseModel):
    ip: str
    created: str
    source: str
    expires: str = "forever"
    reason: str


class PlayerLists(CamelModel):
    whitelist: list[WhitelistEntry]
    ops: list[OpEntry]
    banned_players: list[BannedPlayerEntry]
    banned_ips: list[BannedIpEntry]


class Envelope(BaseModel):
    success: bool
    message: str
    data: Any = Field(default_factory=dict)
