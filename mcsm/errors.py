from typing import Any, Optional


class ServiceError(Exception):
    kind = "service_error"
    default_status = 500

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code or self.default_status
        self.message = message
        self.details = details or {}


class BadRequest(ServiceError):
    kind = "bad_request"
    default_status = 400


class ConflictError(ServiceError):
    kind = "conflict"
    default_status = 409


class NotFoundError(ServiceError):
    kind = "not_found"
    default_status = 404


class ConfigCorrupt(ServiceError):
    kind = "config_corrupt"
    default_status = 500


class DownloadError(ServiceError):
    kind = "download_failed"
    default_status = 502


# Lifecycle state violations


class AlreadyRunning(ServiceError):
    kind = "already_running"
    default_status = 409


class NotRunning(ServiceError):
    kind = "not_running"
    default_status = 409


class ServerBusy(ServiceError):
    kind = "server_busy"
    default_status = 409


class LaunchFailed(ServiceError):
    kind = "launch_failed"
    default_status = 500


class RestartTimeout(ServiceError):
    kind = "restart_timeout"
    default_status = 504


class JavaError(ServiceError):
    def __init__(self, message: str, help_url: str) -> None:
        super().__init__(f"{message}: {help_url}", details={"help_url": help_url})
        self.help_url = help_url


class JavaNotInstalled(JavaError):
    kind = "java_not_installed"


class JavaWrongVersion(JavaError):
    kind = "java_wrong_version"


# Remote console


class RconError(ServiceError):
    kind = "rcon_error"
    default_status = 502


class RconAuthError(RconError):
    kind = "rcon_auth"


class RconConnError(RconError):
    kind = "rcon_connection"


class RconTimeout(RconError):
    kind = "rcon_timeout"
    default_status = 504


# Status query


class QueryDisabled(ServiceError):
    kind = "query_disabled"
    default_status = 409


class Unreachable(ServiceError):
    kind = "unreachable"
    default_status = 503


# Player lookup


class PlayerNotFound(ServiceError):
    kind = "player_not_found"
    default_status = 404


class LookupUnavailable(ServiceError):
    kind = "lookup_unavailable"
    default_status = 502
