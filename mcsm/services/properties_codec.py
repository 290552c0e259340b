import json
import os
import secrets
import string
from typing import Any, Dict, Mapping

RCON_PASSWORD_LENGTH = 12
DEFAULT_RCON_PORT = "25575"
DEFAULT_QUERY_PORT = "25565"
FORCED_ON = ("enable-query", "enable-rcon")

_PASSWORD_ALPHABET = string.ascii_letters + string.digits
_INFO_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "data", "properties.json")


def generate_password(length: int = RCON_PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))


def _split_line(line: str) -> tuple[str, str] | None:
    stripped = line.strip()
    if not stripped or stripped.startswith("#") or "=" not in stripped:
        return None
    key, value = stripped.split("=", 1)
    return key.strip(), value


def parse_properties(text: str) -> Dict[str, str]:
    properties: Dict[str, str] = {}
    for line in text.splitlines():
        pair = _split_line(line)
        if pair is None:
            continue
        key, value = pair
        properties[key] = value
    return properties


def serialize_properties(properties: Mapping[str, Any]) -> str:
    return "".join(f"{key}={value}\n" for key, value in properties.items())


def _newline_for(text: str) -> str:
    return "\r\n" if "\r\n" in text else "\n"


def update_properties(text: str, updates: Mapping[str, str]) -> str:
    """Set ``updates`` in place, appending unknown keys; other lines are untouched.

    Every occurrence of a repeated key is rewritten, since the server reads the last one.
    """
    newline = _newline_for(text)
    remaining = dict(updates)
    new_lines: list[str] = []
    for line in text.splitlines(keepends=True):
        pair = _split_line(line)
        if pair is None or pair[0] not in updates:
            new_lines.append(line)
            continue
        key = pair[0]
        ending = line[len(line.rstrip("\r\n")):] or newline
        new_lines.append(f"{key}={updates[key]}{ending}")
        remaining.pop(key, None)

    if remaining and new_lines and not new_lines[-1].endswith(("\n", "\r")):
        new_lines[-1] += newline
    for key, value in remaining.items():
        new_lines.append(f"{key}={value}{newline}")
    return "".join(new_lines)


def force_properties(text: str) -> str:
    """Force query and RCON on and make sure RCON has a usable password."""
    current = parse_properties(text)
    updates: Dict[str, str] = {key: "true" for key in FORCED_ON if current.get(key) != "true"}
    if not current.get("rcon.password", "").strip():
        updates["rcon.password"] = generate_password()
    if "rcon.port" not in current:
        updates["rcon.port"] = DEFAULT_RCON_PORT
    if not updates:
        return text
    return update_properties(text, updates)


def sign_eula(text: str) -> str:
    current = parse_properties(text)
    if current.get("eula", "").strip().lower() == "true":
        return text
    return update_properties(text, {"eula": "true"})


def load_property_info() -> Dict[str, Any]:
    with open(_INFO_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)
