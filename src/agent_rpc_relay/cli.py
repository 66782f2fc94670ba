import argparse
import asyncio
import json
import logging
import os
import shlex
import sys
import uuid
from pathlib import Path
from typing import Any, List, Optional, TextIO

from agent_rpc_relay.config import DEFAULT_CONFIG_DIR, RelayConfig, apply_env_defaults, load_config, load_env_file
from agent_rpc_relay.domain.contracts import LineObserver
from agent_rpc_relay.errors import RpcError, classify_error
from agent_rpc_relay.events.event_bus import EventBus, RunEvent
from agent_rpc_relay.execution.registry import RpcClientRegistry


def _configure_logging(level: str) -> None:
    level = (level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _print_config(config: RelayConfig) -> None:
    print(f"Config dir: {config.config_dir}")
    print(f"Env file: {config.env_path}")
    print(f"Agent command: {shlex.join(config.argv) if config.argv else '(not set)'}")
    print(f"Agent cwd: {config.cwd or '(inherit)'}")
    print(f"Timeout: {config.timeout_sec}s (ceiling {config.timeout_ceiling_sec}s)")


def _parse_prompt(text: str, as_json: bool) -> Any:
    if not as_json:
        return text
    try:
        return json.loads(text)
    except ValueError as exc:
        raise ValueError(f"--json prompt is not valid JSON: {exc}") from exc


def _stream_observer(bus: EventBus, out: TextIO) -> LineObserver:
    def _echo(event: RunEvent) -> None:
        print(event.payload, file=out, flush=True)

    bus.subscribe(_echo)
    return bus.line_observer("run-" + uuid.uuid4().hex[:12])


def _report_error(exc: BaseException) -> int:
    entry = classify_error(exc)
    print(f"{entry.user_message} ({entry.code}: {exc})", file=sys.stderr)
    return entry.exit_status


async def _run_once(
    registry: RpcClientRegistry,
    argv: List[str],
    cwd: Optional[str],
    timeout_sec: float,
    prompt: Any,
    on_line: Optional[LineObserver],
) -> int:
    try:
        result = await registry.call(argv, cwd, timeout_sec, prompt, on_line=on_line)
    except (RpcError, OSError) as exc:
        return _report_error(exc)
    finally:
        await registry.aclose()
    if result.stdout:
        print(result.stdout)
    if result.signal:
        print(f"agent terminated by {result.signal}", file=sys.stderr)
    return result.code


async def _run_repl(
    registry: RpcClientRegistry,
    argv: List[str],
    cwd: Optional[str],
    timeout_sec: float,
    as_json: bool,
    on_line: Optional[LineObserver],
) -> int:
    status = 0
    try:
        while True:
            raw = await asyncio.to_thread(sys.stdin.readline)
            text = raw.rstrip("\n")
            if not text.strip():
                return status
            try:
                prompt = _parse_prompt(text, as_json)
            except ValueError as exc:
                print(str(exc), file=sys.stderr)
                status = 2
                continue
            try:
                result = await registry.call(argv, cwd, timeout_sec, prompt, on_line=on_line)
            except (RpcError, OSError) as exc:
                status = _report_error(exc)
                continue
            print(result.stdout, flush=True)
            status = result.code
    finally:
        await registry.aclose()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Send prompts to a line-protocol agent process")
    parser.add_argument(
        "--config-dir",
        default=str(DEFAULT_CONFIG_DIR),
        help="Directory holding the .env config (default: ~/.config/agent-rpc-relay)",
    )
    parser.add_argument("--print-config", action="store_true", help="Print active config summary")
    parser.add_argument("--cwd", default=None, help="Working directory for the agent process")
    parser.add_argument("--timeout", type=float, default=None, help="Seconds to wait for the agent turn")
    parser.add_argument("--prompt", default=None, help="Prompt text (default: read stdin)")
    parser.add_argument("--json", action="store_true", help="Parse the prompt as a JSON payload")
    parser.add_argument("--stream", action="store_true", help="Echo agent output lines to stderr as they arrive")
    parser.add_argument("--repl", action="store_true", help="Send one prompt per stdin line to a persistent agent")
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "WARNING"))
    parser.add_argument("command", nargs="*", help="Agent command, after --")

    args = parser.parse_args(argv)
    _configure_logging(args.log_level)

    config = load_config(Path(args.config_dir).expanduser().resolve())
    # Agent subprocesses inherit os.environ, so .env entries reach them too.
    apply_env_defaults(load_env_file(config.env_path))
    if args.print_config:
        _print_config(config)
        return 0

    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    command = command or list(config.argv)
    if not command:
        print("Missing agent command: pass it after -- or set RPC_AGENT_COMMAND.", file=sys.stderr)
        return 2

    cwd = args.cwd or config.cwd
    timeout_sec = args.timeout if args.timeout is not None else float(config.timeout_sec)
    if timeout_sec <= 0:
        print("--timeout must be positive.", file=sys.stderr)
        return 2

    registry = RpcClientRegistry(timeout_ceiling_sec=config.timeout_ceiling_sec)
    on_line = _stream_observer(EventBus(), sys.stderr) if args.stream else None

    if args.repl:
        return asyncio.run(_run_repl(registry, command, cwd, timeout_sec, args.json, on_line))

    raw_prompt = args.prompt if args.prompt is not None else sys.stdin.read()
    try:
        prompt = _parse_prompt(raw_prompt, args.json)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    return asyncio.run(_run_once(registry, command, cwd, timeout_sec, prompt, on_line))


if __name__ == "__main__":
    raise SystemExit(main())
