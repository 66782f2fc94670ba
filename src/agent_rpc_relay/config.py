import os
import shlex
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional

AGENT_COMMAND_KEY = "RPC_AGENT_COMMAND"
AGENT_CWD_KEY = "RPC_AGENT_CWD"
TIMEOUT_KEY = "RPC_TIMEOUT_SEC"
TIMEOUT_CEILING_KEY = "RPC_TIMEOUT_CEILING_SEC"

DEFAULT_TIMEOUT_SEC = 120
# Hang-prevention ceiling applied on top of whatever timeout the caller asks for.
HARD_TIMEOUT_CEILING_SEC = 300

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "agent-rpc-relay"


@dataclass
class RelayConfig:
    argv: List[str]
    cwd: Optional[str]
    timeout_sec: int
    timeout_ceiling_sec: int
    config_dir: Path
    env_path: Path


def load_env_file(path: Path) -> Dict[str, str]:
    data: Dict[str, str] = {}
    if not path.exists():
        return data
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            data[k.strip()] = v.strip()
    except Exception as exc:
        print(f"Failed to read .env: {exc}", file=sys.stderr)
    return data


def get_env_value(key: str, env_file: Mapping[str, str]) -> Optional[str]:
    return os.environ.get(key) or env_file.get(key)


def apply_env_defaults(env_file: Dict[str, str], target_env: Optional[Dict[str, str]] = None) -> int:
    """Populate missing process env vars from .env-style mapping.

    Existing environment values are never overwritten.
    Returns the number of keys applied.
    """
    target = target_env if target_env is not None else os.environ  # type: ignore[assignment]
    applied = 0
    for raw_key, raw_value in (env_file or {}).items():
        key = str(raw_key or "").strip()
        if not key:
            continue
        if key in target and str(target.get(key) or "").strip():
            continue
        target[key] = str(raw_value or "")
        applied += 1
    return applied


def read_int_env(name: str, default: int, env_file: Optional[Mapping[str, str]] = None) -> int:
    raw = (get_env_value(name, env_file or {}) or "").strip()
    if not raw:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(1, value)


def parse_command(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    try:
        return shlex.split(raw)
    except ValueError as exc:
        print(f"Failed to parse {AGENT_COMMAND_KEY}: {exc}", file=sys.stderr)
        return []


def get_env_path(config_dir: Path) -> Path:
    return config_dir / ".env"


def load_config(config_dir: Path) -> RelayConfig:
    env_path = get_env_path(config_dir)
    env_file = load_env_file(env_path)
    cwd = (get_env_value(AGENT_CWD_KEY, env_file) or "").strip() or None
    return RelayConfig(
        argv=parse_command(get_env_value(AGENT_COMMAND_KEY, env_file)),
        cwd=str(Path(cwd).expanduser()) if cwd else None,
        timeout_sec=read_int_env(TIMEOUT_KEY, DEFAULT_TIMEOUT_SEC, env_file),
        timeout_ceiling_sec=read_int_env(TIMEOUT_CEILING_KEY, HARD_TIMEOUT_CEILING_SEC, env_file),
        config_dir=config_dir,
        env_path=env_path,
    )
