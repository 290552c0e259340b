import os
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv()

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    if value.strip().lower() in {"1", "true", "yes", "on"}:
        return True
    if value.strip().lower() in {"0", "false", "no", "off"}:
        return False
    return default


@dataclass(frozen=True)
class Settings:
    host: str
    port: int
    config_path: str
    servers_root: str
    archive_root: str
    memory_split: int
    use_tuning_flags: bool
    java_path: str | None
    java_version: int
    java_install_root: str
    java_download_url: str
    vanilla_manifest_url: str
    paper_download_url: str
    player_lookup_url: str
    http_timeout: float
    rcon_timeout: float
    query_timeout: float
    restart_timeout: float
    restart_poll_interval: float
    console_buffer_lines: int
    download_ttl: float
    log_level: str


def load_settings() -> Settings:
    return Settings(
        # 7767 spells "MC" in decimal character codes
        host=os.getenv("HOST", "0.0.0.0"),
        port=_get_env_int("PORT", 7767),
        config_path=os.path.abspath(
            os.getenv("CONFIG_PATH", os.path.join(BASE_DIR, "config", "user", "config.json"))
        ),
        servers_root=os.path.abspath(os.getenv("SERVERS_ROOT", os.path.join(BASE_DIR, "mc-servers"))),
        archive_root=os.path.abspath(os.getenv("ARCHIVE_ROOT", os.path.join(BASE_DIR, "worlds"))),
        memory_split=max(1, _get_env_int("MEMORY_SPLIT", 3)),
        use_tuning_flags=_get_env_bool("USE_TUNING_FLAGS", True),
        java_path=os.getenv("JAVA_PATH") or None,
        java_version=_get_env_int("JAVA_VERSION", 8),
        java_install_root=os.getenv("JAVA_INSTALL_ROOT", "/usr/lib/jvm"),
        java_download_url=os.getenv(
            "JAVA_DOWNLOAD_URL", "https://www.java.com/en/download/manual.jsp"
        ),
        vanilla_manifest_url=os.getenv(
            "VANILLA_MANIFEST_URL",
            "https://launchermeta.mojang.com/mc/game/version_manifest.json",
        ),
        paper_download_url=os.getenv(
            "PAPER_DOWNLOAD_URL", "https://papermc.io/api/v1/paper/{version}/latest/download"
        ),
        player_lookup_url=os.getenv(
            "PLAYER_LOOKUP_URL", "https://playerdb.co/api/player/minecraft/"
        ),
        http_timeout=_get_env_float("HTTP_TIMEOUT", 30.0),
        rcon_timeout=_get_env_float("RCON_TIMEOUT", 10.0),
        query_timeout=_get_env_float("QUERY_TIMEOUT", 3.0),
        restart_timeout=_get_env_float("RESTART_TIMEOUT", 120.0),
        restart_poll_interval=_get_env_float("RESTART_POLL_INTERVAL", 0.25),
        console_buffer_lines=_get_env_int("CONSOLE_BUFFER_LINES", 500),
        download_ttl=_get_env_float("DOWNLOAD_TTL", 3600.0),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


settings = load_settings()
