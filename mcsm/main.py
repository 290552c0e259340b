import base64
import binascii
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import BackgroundTasks, FastAPI, Query, Request
from fastapi.responses import FileResponse, JSONResponse

from .config import settings
from .errors import BadRequest, NotFoundError, ServiceError
from .models import Envelope
from .services.config_store import ConfigStore
from .services.player_lists import PlayerListService
from .services.server_registry import ServerRegistry

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

store = ConfigStore(settings=settings)
registry = ServerRegistry(settings=settings, store=store)
player_lists = PlayerListService(store)
# download id -> (archive path, monotonic expiry)
downloads: dict[str, tuple[str, float]] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    online = await registry.reconcile_on_startup()
    logger.info("Manager ready; %s server(s) already online", len(online))
    yield
    await registry.shutdown()
    for did in list(downloads):
        discard_download(did)


app = FastAPI(title="Minecraft Server Manager", lifespan=lifespan)


def envelope(message: str = "", data: Any = None) -> dict[str, Any]:
    return Envelope(success=True, message=message, data=data if data is not None else {}).model_dump()


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    body = Envelope(success=False, message=exc.message, data={"error": exc.kind, **exc.details})
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    body = Envelope(success=False, message=str(exc) or exc.__class__.__name__, data={"error": "internal"})
    return JSONResponse(status_code=500, content=body.model_dump())


@app.get("/servers")
async def list_servers() -> dict[str, Any]:
    servers = await registry.list_servers()
    return envelope(data=[summary.to_json() for summary in servers])


@app.get("/servers/properties/{server_id}")
async def get_properties(server_id: str) -> dict[str, Any]:
    document = await registry.read_properties(server_id)
    return envelope(data=document.to_json())


@app.get("/servers/lists/{server_id}")
async def get_player_lists(server_id: str) -> dict[str, Any]:
    lists = await player_lists.read_lists(server_id)
    return envelope(data=lists.to_json())


@app.get("/servers/console/{server_id}")
async def get_console(server_id: str, lines: int = Query(100, ge=0, le=5000)) -> dict[str, Any]:
    await store.get(server_id)
    return envelope(data={"lines": registry.console(server_id, lines)})


@app.get("/servers/new/{edition}/{version}/{name}")
async def create_server(edition: str, version: str, name: str) -> dict[str, Any]:
    record = await registry.create(edition, version, name)
    return envelope("Server created", record.to_json())


@app.get("/servers/import/{edition}/{version}/{name}")
async def import_server(
    edition: str,
    version: str,
    name: str,
    directory: str = Query(...),
    binary: str = Query(...),
) -> dict[str, Any]:
    record = await registry.import_server(edition, version, name, directory, binary)
    return envelope("Server imported", record.to_json())


@app.get("/servers/update/server.properties/{server_id}/{encoded:path}")
async def update_properties(server_id: str, encoded: str) -> dict[str, Any]:
    await registry.write_properties(server_id, decode_properties(encoded))
    return envelope("Success!")


@app.get("/servers/delete/{server_id}")
async def delete_server(server_id: str) -> dict[str, Any]:
    await registry.remove(server_id)
    return envelope("Server deleted.")


@app.get("/servers/start/{server_id}")
async def start_server(server_id: str) -> dict[str, Any]:
    await registry.start(server_id)
    return envelope("Server started!")


@app.get("/servers/stop/{server_id}")
async def stop_server(server_id: str) -> dict[str, Any]:
    reply = await registry.stop(server_id)
    return envelope(reply)


@app.get("/servers/restart/{server_id}")
async def restart_server(server_id: str) -> dict[str, Any]:
    await registry.restart(server_id)
    return envelope("Server restarted!")


@app.get("/servers/query/{server_id}")
async def query_server(server_id: str) -> dict[str, Any]:
    status = await registry.query(server_id)
    return envelope("Online", status.to_json())


@app.get("/servers/download/{server_id}")
async def package_server(server_id: str) -> dict[str, Any]:
    purge_expired_downloads()
    archive_path = await registry.archive(server_id)
    did = uuid.uuid4().hex
    downloads[did] = (archive_path, time.monotonic() + settings.download_ttl)
    return envelope("Archive ready", {"did": did})


@app.get("/download/{did}")
async def download_archive(did: str) -> FileResponse:
    purge_expired_downloads()
    entry = downloads.get(did)
    if entry is None or not os.path.isfile(entry[0]):
        discard_download(did)
        raise NotFoundError(f"No such download: {did}")
    path = entry[0]
    # Each archive is served once and removed after the response is sent.
    cleanup = BackgroundTasks()
    cleanup.add_task(discard_download, did)
    return FileResponse(
        path,
        media_type="application/zip",
        filename=os.path.basename(path),
        background=cleanup,
    )


@app.get("/servers/world/restore/{server_id}/{filename}")
async def restore_world(server_id: str, filename: str) -> dict[str, Any]:
    world_name = await registry.restore_world(server_id, filename)
    return envelope(f"World {world_name} restored", {"levelName": world_name})


@app.get("/servers/whitelist/add/{server_id}/{player}")
async def whitelist_add(server_id: str, player: str) -> dict[str, Any]:
    entry = await player_lists.whitelist_add(server_id, player)
    return envelope(f"Player {player} added to whitelist", entry.model_dump())


@app.get("/servers/whitelist/remove/{server_id}/{player_uuid}")
async def whitelist_remove(server_id: str, player_uuid: str) -> dict[str, Any]:
    removed = await player_lists.whitelist_remove(server_id, player_uuid)
    return envelope("Player removed from whitelist", {"removed": removed})


@app.get("/servers/op/add/{server_id}/{player}")
async def op_add(server_id: str, player: str) -> dict[str, Any]:
    entry = await player_lists.op_add(server_id, player)
    return envelope(f"Player {player} added to ops", entry.model_dump(by_alias=True))


@app.get("/servers/op/remove/{server_id}/{player_uuid}")
async def op_remove(server_id: str, player_uuid: str) -> dict[str, Any]:
    removed = await player_lists.op_remove(server_id, player_uuid)
    return envelope("Player removed from ops", {"removed": removed})


@app.get("/servers/ban/add/{server_id}/{player}")
async def ban_add(server_id: str, player: str, reason: str = Query("")) -> dict[str, Any]:
    entry = await player_lists.ban_add(server_id, player, reason)
    return envelope(f"Player {player} banned", entry.model_dump())


@app.get("/servers/ban/remove/{server_id}/{player_uuid}")
async def ban_remove(server_id: str, player_uuid: str) -> dict[str, Any]:
    removed = await player_lists.ban_remove(server_id, player_uuid)
    return envelope("Player unbanned", {"removed": removed})


@app.get("/servers/ban-ip/add/{server_id}/{ip}")
async def ban_ip_add(server_id: str, ip: str, reason: str = Query("")) -> dict[str, Any]:
    entry = await player_lists.ban_ip_add(server_id, ip, reason)
    return envelope(f"IP {ip} banned", entry.model_dump())


@app.get("/servers/ban-ip/remove/{server_id}/{ip}")
async def ban_ip_remove(server_id: str, ip: str) -> dict[str, Any]:
    removed = await player_lists.ban_ip_remove(server_id, ip)
    return envelope("IP unbanned", {"removed": removed})


def discard_download(did: str) -> None:
    entry = downloads.pop(did, None)
    if entry is None:
        return
    path = entry[0]
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Failed to delete archive %s: %s", path, exc)


def purge_expired_downloads() -> None:
    now = time.monotonic()
    for did, (_, expires_at) in list(downloads.items()):
        if expires_at <= now:
            logger.info("Download %s expired", did)
            discard_download(did)


def decode_properties(encoded: str) -> str:
    """Accept standard or URL-safe base64, with or without padding."""
    normalized = encoded.strip().replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    try:
        return base64.b64decode(normalized, validate=True).decode("utf-8")
    except (binascii.Error, ValueError) as exc:
        raise BadRequest(f"Properties payload is not valid base64: {exc}") from exc


def run() -> None:
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
