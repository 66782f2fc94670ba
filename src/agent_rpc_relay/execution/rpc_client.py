from __future__ import annotations

import asyncio
import codecs
import logging
import signal
import threading
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Set

from agent_rpc_relay.config import HARD_TIMEOUT_CEILING_SEC, TIMEOUT_CEILING_KEY, read_int_env
from agent_rpc_relay.domain.contracts import LineObserver, ProcessIdentity, RpcResult
from agent_rpc_relay.errors import AlreadyBusy, ClientDisposed, RpcTimeout
from agent_rpc_relay.observability.structured_log import log_json
from agent_rpc_relay.prompt import normalize_prompt, preview_prompt
from agent_rpc_relay.protocol import decode_line, encode_prompt, is_turn_end
from agent_rpc_relay.util import redact, tail_text

logger = logging.getLogger(__name__)

STREAM_LIMIT_BYTES = 16 * 1024 * 1024
STDERR_READ_BYTES = 4096
LOG_LINE_PREVIEW_CHARS = 200
EXIT_POLL_SEC = 0.05
EXIT_DRAIN_SEC = 0.5


@dataclass
class _PendingCall:
    """Single-winner completion gate for one in-flight call.

    The turn-end marker, process exit, timeout, dispose and caller cancellation
    all race for the same call. Each must ``claim()`` before acting; only the
    first claim succeeds, and it also disarms the timer.
    """

    call_id: int
    future: asyncio.Future
    on_line: Optional[LineObserver] = None
    timer: Optional[asyncio.TimerHandle] = None
    settled: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def claim(self) -> bool:
        with self._lock:
            if self.settled:
                return False
            self.settled = True
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None
        return True

    def resolve(self, result: RpcResult) -> None:
        if not self.future.done():
            self.future.set_result(result)

    def reject(self, exc: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(exc)


@dataclass
class _ProcessHandle:
    process: asyncio.subprocess.Process
    stderr_chunks: List[str] = field(default_factory=list)
    killed: bool = False
    watcher: Optional[asyncio.Task] = None
    _decoder: Any = field(default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace"))

    @property
    def stderr(self) -> str:
        return "".join(self.stderr_chunks)

    def feed_stderr(self, data: bytes, final: bool = False) -> None:
        text = self._decoder.decode(data, final=final)
        if text:
            self.stderr_chunks.append(text)


class LineRpcClient:
    """Owns one long-lived line-protocol agent process and serialises prompts to it.

    Each ``call`` writes a single ``{"type": "prompt", "message": ...}`` line and
    resolves with every stdout line emitted until the agent reports
    ``agent_end``, the process exits, or the capped timeout fires. Only one call
    may be in flight; a second caller gets ``AlreadyBusy`` instead of a queue slot.
    """

    def __init__(
        self,
        argv: Sequence[str],
        cwd: Optional[str] = None,
        *,
        timeout_ceiling_sec: Optional[float] = None,
        stream_limit: int = STREAM_LIMIT_BYTES,
    ) -> None:
        if not argv:
            raise ValueError("argv must contain at least the executable.")
        self._identity = ProcessIdentity.of(argv, cwd)
        if timeout_ceiling_sec is None:
            timeout_ceiling_sec = read_int_env(TIMEOUT_CEILING_KEY, HARD_TIMEOUT_CEILING_SEC)
        if timeout_ceiling_sec <= 0:
            raise ValueError(f"timeout_ceiling_sec must be positive, got {timeout_ceiling_sec!r}.")
        self._timeout_ceiling_sec = float(timeout_ceiling_sec)
        self._stream_limit = max(1024, int(stream_limit))
        self._handle: Optional[_ProcessHandle] = None
        self._pending: Optional[_PendingCall] = None
        self._buffer: List[str] = []
        self._call_seq = 0
        self._watchers: Set[asyncio.Task] = set()

    @property
    def identity(self) -> ProcessIdentity:
        return self._identity

    @property
    def timeout_ceiling_sec(self) -> float:
        return self._timeout_ceiling_sec

    @property
    def busy(self) -> bool:
        return self._pending is not None

    @property
    def running(self) -> bool:
        return self._handle is not None and self._handle.process.returncode is None

    @property
    def pid(self) -> Optional[int]:
        if self._handle is None:
            return None
        return self._handle.process.pid

    async def call(
        self,
        prompt: Any,
        timeout_sec: float,
        on_line: Optional[LineObserver] = None,
    ) -> RpcResult:
        if self._pending is not None:
            raise AlreadyBusy()
        if timeout_sec is None or timeout_sec <= 0:
            raise ValueError(f"timeout_sec must be positive, got {timeout_sec!r}.")

        normalized = normalize_prompt(prompt)
        if normalized.coerced:
            self._log_coercion(prompt)

        loop = asyncio.get_running_loop()
        self._call_seq += 1
        pending = _PendingCall(call_id=self._call_seq, future=loop.create_future(), on_line=on_line)
        # Claimed before the first await so a concurrent caller sees us as busy.
        self._pending = pending
        self._buffer = []
        # Armed before spawn and write so an agent that never reads stdin is still bounded.
        cap_sec = min(float(timeout_sec), self._timeout_ceiling_sec)
        pending.timer = loop.call_later(cap_sec, self._on_timeout, pending, cap_sec)

        try:
            handle = await self._ensure_process(pending)
            if self._pending is pending:
                await self._write_frame(handle, pending, encode_prompt(normalized.text))
        except asyncio.CancelledError:
            self._abandon(pending, status="cancelled")
            raise
        except Exception:
            if pending.claim():
                self._clear_pending(pending)
                raise
            # Exit, timeout or dispose during the write already settled the call.

        if not pending.settled:
            log_json(
                logger,
                "rpc.call.start",
                call_id=pending.call_id,
                pid=self.pid,
                timeout_sec=cap_sec,
                coerced=normalized.coerced,
            )

        try:
            return await pending.future
        except asyncio.CancelledError:
            self._abandon(pending, status="cancelled")
            raise

    def dispose(self) -> None:
        pending = self._pending
        if pending is not None and pending.claim():
            self._clear_pending(pending)
            self._log_finish(pending, status="disposed")
            pending.reject(ClientDisposed())
        handle = self._handle
        if handle is not None:
            self._release(handle)
        self._buffer = []

    async def aclose(self) -> None:
        """Dispose and wait until every process this client spawned has been reaped."""
        self.dispose()
        if self._watchers:
            await asyncio.gather(*list(self._watchers))

    async def _ensure_process(self, pending: _PendingCall) -> _ProcessHandle:
        handle = self._handle
        if handle is not None and handle.process.returncode is None:
            return handle
        if handle is not None:
            # Exited but the watcher has not run yet; it must not touch this call.
            self._release(handle)

        argv = self._identity.argv
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self._identity.cwd,
            limit=self._stream_limit,
        )
        handle = _ProcessHandle(process=process)
        handle.watcher = asyncio.ensure_future(self._watch(handle))
        self._watchers.add(handle.watcher)
        handle.watcher.add_done_callback(self._watchers.discard)
        log_json(logger, "rpc.spawn", pid=process.pid, command=redact(" ".join(argv)), cwd=self._identity.cwd or "")

        if self._pending is not pending:
            # Disposed while spawning; nothing may adopt this process.
            self._release(handle, adopt=False)
            return handle
        self._handle = handle
        return handle

    async def _write_frame(self, handle: _ProcessHandle, pending: _PendingCall, frame: bytes) -> None:
        stdin = handle.process.stdin
        stdin.write(frame)
        drain = asyncio.ensure_future(stdin.drain())
        try:
            await asyncio.wait({drain, pending.future}, return_when=asyncio.FIRST_COMPLETED)
            if drain.done():
                drain.result()
        finally:
            if not drain.done():
                drain.cancel()

    async def _watch(self, handle: _ProcessHandle) -> None:
        process = handle.process
        pumps = [
            asyncio.ensure_future(self._pump_stdout(handle)),
            asyncio.ensure_future(self._pump_stderr(handle)),
        ]
        try:
            # Poll rather than wait(): a grandchild holding the pipes open must
            # not hide the agent's own exit.
            while process.returncode is None:
                await asyncio.sleep(EXIT_POLL_SEC)
            try:
                await asyncio.wait_for(asyncio.gather(*pumps), timeout=EXIT_DRAIN_SEC)
            except asyncio.TimeoutError:
                logger.warning("rpc: output pipes of pid %s still open after exit", process.pid)
        finally:
            for task in pumps:
                if not task.done():
                    task.cancel()
        self._handle_exit(handle, process.returncode)

    async def _pump_stdout(self, handle: _ProcessHandle) -> None:
        stream = handle.process.stdout
        if stream is None:
            return
        oversized = False
        while True:
            try:
                raw = await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as exc:
                raw = exc.partial
            except asyncio.LimitOverrunError as exc:
                # Skip the buffered part and keep skipping until the line ends.
                await stream.readexactly(exc.consumed)
                oversized = True
                continue
            if oversized:
                oversized = False
                logger.warning("rpc: dropped oversized output line from pid %s", handle.process.pid)
                if raw.endswith(b"\n"):
                    continue
                return
            if not raw:
                return
            self._handle_line(handle, _strip_eol(raw.decode("utf-8", errors="replace")))

    async def _pump_stderr(self, handle: _ProcessHandle) -> None:
        stream = handle.process.stderr
        if stream is None:
            return
        while True:
            chunk = await stream.read(STDERR_READ_BYTES)
            if not chunk:
                handle.feed_stderr(b"", final=True)
                return
            handle.feed_stderr(chunk)

    def _handle_line(self, handle: _ProcessHandle, line: str) -> None:
        if handle is not self._handle:
            return
        pending = self._pending
        if pending is None or pending.settled:
            logger.debug("rpc: dropping output with no pending request: %s", line[:LOG_LINE_PREVIEW_CHARS])
            return

        self._buffer.append(line)
        if pending.on_line is not None:
            try:
                pending.on_line(line)
            except Exception:
                logger.exception("rpc: line observer failed")

        if not is_turn_end(decode_line(line)):
            return
        if not pending.claim():
            return
        self._clear_pending(pending)
        stdout = "\n".join(self._buffer)
        self._buffer = []
        self._log_finish(pending, status="completed", code=0)
        pending.resolve(RpcResult(stdout=stdout, stderr=handle.stderr, code=0))

    def _handle_exit(self, handle: _ProcessHandle, returncode: Optional[int]) -> None:
        code = int(returncode or 0)
        signal_name: Optional[str] = None
        if code < 0:
            signal_name = _signal_name(-code)
            code = 0
        log_json(
            logger,
            "rpc.exit",
            pid=handle.process.pid,
            returncode=returncode,
            signal=signal_name,
            killed=handle.killed,
            stderr_tail=redact(tail_text(handle.stderr)),
        )
        if handle is not self._handle:
            return

        pending = self._pending
        if pending is not None and pending.claim():
            self._clear_pending(pending)
            stdout = "\n".join(self._buffer)
            self._log_finish(pending, status="exited", code=code, signal=signal_name)
            # Exit counts as completion of the turn with whatever was produced.
            pending.resolve(
                RpcResult(
                    stdout=stdout,
                    stderr=handle.stderr,
                    code=code,
                    signal=signal_name,
                    killed=handle.killed,
                )
            )
        self._release(handle)
        self._buffer = []

    def _on_timeout(self, pending: _PendingCall, cap_sec: float) -> None:
        if not pending.claim():
            return
        self._clear_pending(pending)
        self._log_finish(pending, status="timeout", timeout_sec=cap_sec)
        pending.reject(RpcTimeout(cap_sec))
        handle = self._handle
        if handle is not None:
            self._release(handle)
        self._buffer = []

    def _abandon(self, pending: _PendingCall, status: str) -> None:
        if not pending.claim():
            return
        self._clear_pending(pending)
        self._log_finish(pending, status=status)
        # The agent is mid-turn; its remaining output cannot belong to the next call.
        handle = self._handle
        if handle is not None:
            self._release(handle)
        self._buffer = []

    def _clear_pending(self, pending: _PendingCall) -> None:
        if self._pending is pending:
            self._pending = None

    def _release(self, handle: _ProcessHandle, adopt: bool = True) -> None:
        if adopt and self._handle is handle:
            self._handle = None
        if handle.process.returncode is None:
            handle.killed = True
            try:
                handle.process.kill()
            except ProcessLookupError:
                pass

    def _log_coercion(self, prompt: Any) -> None:
        preview = preview_prompt(prompt)
        safe_preview = redact(preview) if preview else ""
        suffix = f" (preview: {safe_preview})" if safe_preview else ""
        logger.warning("rpc: coerced non-string prompt to text%s", suffix)
        log_json(
            logger,
            "rpc.prompt.coerced",
            level=logging.DEBUG,
            prompt_type=type(prompt).__name__,
            preview=safe_preview,
        )

    def _log_finish(self, pending: _PendingCall, status: str, **fields: Any) -> None:
        log_json(
            logger,
            "rpc.call.finish",
            call_id=pending.call_id,
            status=status,
            buffered_lines=len(self._buffer),
            **fields,
        )


def _strip_eol(line: str) -> str:
    if line.endswith("\n"):
        line = line[:-1]
    if line.endswith("\r"):
        line = line[:-1]
    return line


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"SIG{signum}"
