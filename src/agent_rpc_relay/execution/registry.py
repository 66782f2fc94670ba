from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional, Sequence

from agent_rpc_relay.domain.contracts import LineObserver, ProcessIdentity, RpcResult
from agent_rpc_relay.execution.rpc_client import LineRpcClient
from agent_rpc_relay.observability.structured_log import log_json

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., LineRpcClient]


class RpcClientRegistry:
    """Keeps at most one live client, keyed by (cwd, argv) identity.

    Repeated calls against the same agent configuration share one subprocess so
    whatever session state the agent keeps survives between turns. A different
    command or directory disposes the cached client before a new one is built.
    """

    def __init__(
        self,
        client_factory: Optional[ClientFactory] = None,
        timeout_ceiling_sec: Optional[float] = None,
    ) -> None:
        self._client_factory = client_factory or LineRpcClient
        self._timeout_ceiling_sec = timeout_ceiling_sec
        self._client: Optional[LineRpcClient] = None

    @property
    def current(self) -> Optional[LineRpcClient]:
        return self._client

    def acquire(self, argv: Sequence[str], cwd: Optional[str] = None) -> LineRpcClient:
        identity = ProcessIdentity.of(argv, cwd)
        cached = self._client
        if cached is not None and cached.identity == identity:
            return cached
        if cached is not None:
            log_json(
                logger,
                "rpc.registry.replace",
                previous=cached.identity.key,
                identity=identity.key,
                previous_busy=cached.busy,
            )
            cached.dispose()
        client = self._client_factory(
            list(identity.argv),
            identity.cwd,
            timeout_ceiling_sec=self._timeout_ceiling_sec,
        )
        self._client = client
        return client

    async def call(
        self,
        argv: Sequence[str],
        cwd: Optional[str],
        timeout_sec: float,
        prompt: Any,
        on_line: Optional[LineObserver] = None,
    ) -> RpcResult:
        client = self.acquire(argv, cwd)
        return await client.call(prompt, timeout_sec, on_line=on_line)

    def reset_all(self) -> None:
        client = self._client
        self._client = None
        if client is not None:
            log_json(logger, "rpc.registry.reset", identity=client.identity.key, busy=client.busy)
            client.dispose()

    async def aclose(self) -> None:
        client = self._client
        self._client = None
        if client is not None:
            await client.aclose()


_default_registry: Optional[RpcClientRegistry] = None
_default_lock = threading.Lock()


def default_registry() -> RpcClientRegistry:
    global _default_registry
    with _default_lock:
        if _default_registry is None:
            _default_registry = RpcClientRegistry()
        return _default_registry


async def run_rpc(
    argv: Sequence[str],
    cwd: Optional[str],
    timeout_sec: float,
    prompt: Any,
    on_line: Optional[LineObserver] = None,
) -> RpcResult:
    return await default_registry().call(argv, cwd, timeout_sec, prompt, on_line=on_line)


def reset_rpc() -> None:
    default_registry().reset_all()
