from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

LineObserver = Callable[[str], None]


@dataclass(frozen=True)
class RpcResult:
    stdout: str
    stderr: str
    code: int
    signal: Optional[str] = None
    killed: bool = False


@dataclass(frozen=True)
class ProcessIdentity:
    """Working directory plus argument vector deciding whether a subprocess can be reused."""

    cwd: Optional[str]
    argv: Tuple[str, ...]

    @classmethod
    def of(cls, argv: Sequence[str], cwd: Optional[str] = None) -> "ProcessIdentity":
        return cls(cwd=str(cwd) if cwd else None, argv=tuple(str(part) for part in argv))

    @property
    def key(self) -> str:
        return f"{self.cwd or ''}|{' '.join(self.argv)}"
