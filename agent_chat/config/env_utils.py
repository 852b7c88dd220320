"""Simple .env file manager used by front ends to edit connection settings."""

from __future__ import annotations

from collections import OrderedDict
from pathlib import Path
from typing import MutableMapping, Optional


ENV_FILE = Path(__file__).resolve().parents[2] / ".env"


def read_env_file(path: Optional[Path] = None) -> MutableMapping[str, str]:
    """Return key/value pairs from the .env file (order preserved)."""

    env_file = path or ENV_FILE
    pairs: MutableMapping[str, str] = OrderedDict()
    if not env_file.exists():
        return pairs
    for raw_line in env_file.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        pairs[key.strip()] = value.strip().strip('"').strip("'")
    return pairs


def write_env_file(data: MutableMapping[str, str], path: Optional[Path] = None) -> None:
    """Persist the given key/value pairs back to the .env file."""

    env_file = path or ENV_FILE
    env_file.parent.mkdir(parents=True, exist_ok=True)
    lines = []
    for key, value in data.items():
        if not key:
            continue
        lines.append(f"{key}={value}")
    env_file.write_text("\n".join(lines) + "\n", encoding="utf-8")


def update_env_values(values: MutableMapping[str, object], path: Optional[Path] = None) -> MutableMapping[str, str]:
    """Merge settings field values (e.g. ``agent_api_base_url``) into the .env file.

    Keys are upper-cased to match the environment variable names read by
    ``Settings``; ``None`` removes the key.
    """

    pairs = read_env_file(path)
    for field_name, value in values.items():
        key = field_name.upper()
        if value is None:
            pairs.pop(key, None)
        elif isinstance(value, bool):
            pairs[key] = "true" if value else "false"
        else:
            pairs[key] = str(value)
    write_env_file(pairs, path)
    return pairs
