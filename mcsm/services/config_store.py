import asyncio
import json
import logging
import os
import tempfile
from typing import Any, Optional

from pydantic import ValidationError

from ..config import Settings, settings as default_settings
from ..errors import ConfigCorrupt, ConflictError, NotFoundError
from ..models import ConfigDocument, ServerRecord

logger = logging.getLogger(__name__)


class ConfigStore:
    """The persisted ``{"servers": [...]}`` document.

    Every read-modify-write runs under one lock and lands on disk through an
    atomic rename, so concurrent creates cannot drop each other's records.
    """

    def __init__(self, path: Optional[str] = None, settings: Optional[Settings] = None) -> None:
        self.path = path or (settings or default_settings).config_path
        self._lock = asyncio.Lock()

    async def load(self) -> list[ServerRecord]:
        document = await asyncio.to_thread(self._read)
        return document.servers

    async def get(self, server_id: str) -> ServerRecord:
        for record in await self.load():
            if record.id == server_id:
                return record
        raise NotFoundError(f"No such server exists: {server_id}")

    async def add(self, record: ServerRecord) -> None:
        logger.info("Writing configuration for %s to %s", record.id, self.path)
        async with self._lock:
            document = await asyncio.to_thread(self._read)
            for existing in document.servers:
                if existing.id == record.id:
                    raise ConflictError(f"Server id {record.id} already exists")
                if os.path.realpath(existing.directory) == os.path.realpath(record.directory):
                    raise ConflictError(f"Directory {record.directory} already belongs to {existing.name}")
            document.servers.append(record)
            await asyncio.to_thread(self._write, document)

    async def remove(self, server_id: str) -> ServerRecord:
        async with self._lock:
            document = await asyncio.to_thread(self._read)
            for index, record in enumerate(document.servers):
                if record.id == server_id:
                    del document.servers[index]
                    await asyncio.to_thread(self._write, document)
                    return record
        raise NotFoundError(f"No such server exists: {server_id}")

    async def update(self, server_id: str, **changes: Any) -> ServerRecord:
        async with self._lock:
            document = await asyncio.to_thread(self._read)
            for index, record in enumerate(document.servers):
                if record.id == server_id:
                    updated = record.model_copy(update=changes)
                    document.servers[index] = updated
                    await asyncio.to_thread(self._write, document)
                    return updated
        raise NotFoundError(f"No such server exists: {server_id}")

    def _read(self) -> ConfigDocument:
        if not os.path.exists(self.path):
            return ConfigDocument()
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except json.JSONDecodeError as exc:
            raise ConfigCorrupt(f"Server config {self.path} is not valid JSON: {exc}") from exc
        except OSError as exc:
            raise ConfigCorrupt(f"Failed to read server config {self.path}: {exc}") from exc

        if isinstance(data, dict) and not data:
            return ConfigDocument()
        try:
            return ConfigDocument.model_validate(data)
        except ValidationError as exc:
            raise ConfigCorrupt(f"Server config {self.path} is malformed: {exc}") from exc

    def _write(self, document: ConfigDocument) -> None:
        directory = os.path.dirname(self.path)
        os.makedirs(directory, exist_ok=True)
        tmp_handle = tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=directory,
            prefix=".tmp-config-",
            delete=False,
        )
        tmp_path = tmp_handle.name
        try:
            with tmp_handle:
                json.dump(document.to_json(), tmp_handle, indent="\t")
                tmp_handle.write("\n")
            os.replace(tmp_path, self.path)
        finally:
            if os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass
