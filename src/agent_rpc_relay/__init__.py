from agent_rpc_relay.domain.contracts import ProcessIdentity, RpcResult
from agent_rpc_relay.errors import AlreadyBusy, ClientDisposed, RpcError, RpcTimeout
from agent_rpc_relay.execution.registry import RpcClientRegistry, default_registry, reset_rpc, run_rpc
from agent_rpc_relay.execution.rpc_client import LineRpcClient
from agent_rpc_relay.prompt import NormalizedPrompt, normalize_prompt

__all__ = [
    "AlreadyBusy",
    "ClientDisposed",
    "LineRpcClient",
    "NormalizedPrompt",
    "ProcessIdentity",
    "RpcClientRegistry",
    "RpcError",
    "RpcResult",
    "RpcTimeout",
    "default_registry",
    "normalize_prompt",
    "reset_rpc",
    "run_rpc",
]
