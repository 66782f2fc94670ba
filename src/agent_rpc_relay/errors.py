from dataclasses import dataclass
from typing import List, Tuple, Type


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class RpcError(Exception):
    """Base class for failures raised by the line RPC bridge."""


class AlreadyBusy(RpcError):
    """Raised when a call is issued while another call is still pending on the same client."""

    def __init__(self, message: str = "rpc client already handling a request") -> None:
        super().__init__(message)


class RpcTimeout(RpcError, TimeoutError):
    """Raised when no turn-end marker or process exit arrived within the capped budget."""

    def __init__(self, timeout_sec: float) -> None:
        self.timeout_sec = timeout_sec
        super().__init__(f"rpc timed out after {_format_seconds(timeout_sec)}s")


class ClientDisposed(RpcError):
    """Raised into a pending call when its client is disposed before the call resolved."""

    def __init__(self, message: str = "rpc client disposed while a request was pending") -> None:
        super().__init__(message)


def _format_seconds(value: float) -> str:
    as_float = float(value)
    if as_float.is_integer():
        return str(int(as_float))
    return f"{as_float:g}"


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ErrorCatalogEntry:
    code: str
    title: str
    user_message: str
    exit_status: int


ERROR_CATALOG: List[ErrorCatalogEntry] = [
    ErrorCatalogEntry(
        code="ERR_RPC_BUSY",
        title="Agent busy",
        user_message="The agent is still working on a previous request.",
        exit_status=1,
    ),
    ErrorCatalogEntry(
        code="ERR_RPC_TIMEOUT",
        title="Agent timeout",
        user_message="The agent did not finish its turn in time and was stopped.",
        exit_status=124,
    ),
    ErrorCatalogEntry(
        code="ERR_RPC_DISPOSED",
        title="Agent reset",
        user_message="The agent process was reset before it answered.",
        exit_status=1,
    ),
    ErrorCatalogEntry(
        code="ERR_RPC_SPAWN",
        title="Agent command not available",
        user_message="The agent command could not be started.",
        exit_status=127,
    ),
    ErrorCatalogEntry(
        code="ERR_RPC_WRITE",
        title="Agent input closed",
        user_message="The prompt could not be delivered to the agent process.",
        exit_status=1,
    ),
    ErrorCatalogEntry(
        code="ERR_UNKNOWN",
        title="Unknown agent error",
        user_message="An unknown error occurred while talking to the agent.",
        exit_status=1,
    ),
]

_EXCEPTION_CODES: Tuple[Tuple[Type[BaseException], str], ...] = (
    (AlreadyBusy, "ERR_RPC_BUSY"),
    (RpcTimeout, "ERR_RPC_TIMEOUT"),
    (ClientDisposed, "ERR_RPC_DISPOSED"),
    (FileNotFoundError, "ERR_RPC_SPAWN"),
    (PermissionError, "ERR_RPC_SPAWN"),
    (BrokenPipeError, "ERR_RPC_WRITE"),
    (ConnectionResetError, "ERR_RPC_WRITE"),
)


def get_catalog_entry(code: str) -> ErrorCatalogEntry:
    for entry in ERROR_CATALOG:
        if entry.code == code:
            return entry
    return next(entry for entry in ERROR_CATALOG if entry.code == "ERR_UNKNOWN")


def classify_error(exc: BaseException) -> ErrorCatalogEntry:
    for exc_type, code in _EXCEPTION_CODES:
        if isinstance(exc, exc_type):
            return get_catalog_entry(code)
    return get_catalog_entry("ERR_UNKNOWN")
