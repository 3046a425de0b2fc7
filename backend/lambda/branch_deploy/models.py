"""models.py — Typed records exchanged between branch-deploy components.

GitHub responses are parsed into these records once, at the boundary; the
rest of the code never reaches into raw API dicts.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional

__all__ = [
    "ACQUIRED",
    "COMMAND_KINDS",
    "CONTENDED",
    "Command",
    "Deployment",
    "EnvironmentTarget",
    "InvocationResult",
    "Lock",
    "LockKey",
    "LockResult",
    "MergeRequired",
    "OrderEntry",
    "OrderResult",
    "PrecheckResult",
    "ReleaseResult",
    "RunContext",
]

COMMAND_KINDS = ("deploy", "noop", "lock", "unlock", "lockInfo", "help", "none")

ACQUIRED = "acquired"
CONTENDED = "contended"


# ---------------------------------------------------------------------------
# Commands and environment resolution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Command:
    kind: str

    def __post_init__(self) -> None:
        if self.kind not in COMMAND_KINDS:
            raise ValueError(f"Unknown command kind '{self.kind}'")


@dataclass(frozen=True)
class EnvironmentTarget:
    environment: Optional[str]
    stable_branch_used: bool = False
    sha: Optional[str] = None
    params: Optional[str] = None
    parsed_params: Dict[str, Any] = field(default_factory=dict)
    environment_url: Optional[str] = None


@dataclass(frozen=True)
class PrecheckResult:
    status: bool
    message: str = ""
    ref: Optional[str] = None
    sha: Optional[str] = None
    noop_mode: bool = False
    is_fork: bool = False


@dataclass(frozen=True)
class OrderEntry:
    environment: str
    active: bool


@dataclass(frozen=True)
class OrderResult:
    valid: bool
    results: List[OrderEntry] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Locks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LockKey:
    """Lock identity: an environment name, or the global key when ``environment`` is None."""

    environment: Optional[str] = None

    @property
    def is_global(self) -> bool:
        return self.environment is None

    def __str__(self) -> str:
        return "global" if self.is_global else str(self.environment)


@dataclass(frozen=True)
class Lock:
    environment: Optional[str]
    global_lock: bool
    sticky: bool
    created_by: str
    created_at: str
    reason: Optional[str] = None
    branch: Optional[str] = None
    link: Optional[str] = None
    unlock_command: str = ""

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "Lock":
        if not isinstance(data, dict):
            raise ValueError("lock payload must be a JSON object")
        created_by = data.get("created_by")
        created_at = data.get("created_at")
        if not created_by or not created_at:
            raise ValueError("lock payload requires created_by and created_at")
        is_global = bool(data.get("global", False))
        return cls(
            environment=None if is_global else data.get("environment"),
            global_lock=is_global,
            sticky=bool(data.get("sticky", False)),
            created_by=str(created_by),
            created_at=str(created_at),
            reason=data.get("reason"),
            branch=data.get("branch"),
            link=data.get("link"),
            unlock_command=str(data.get("unlock_command") or ""),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "branch": self.branch,
            "created_at": self.created_at,
            "created_by": self.created_by,
            "sticky": self.sticky,
            "environment": self.environment,
            "global": self.global_lock,
            "unlock_command": self.unlock_command,
            "link": self.link,
        }


@dataclass(frozen=True)
class LockResult:
    """Outcome of an acquire attempt. Contention is a value, not an error."""

    outcome: str
    key: LockKey
    lock: Optional[Lock] = None

    @property
    def acquired(self) -> bool:
        return self.outcome == ACQUIRED

    @property
    def contended(self) -> bool:
        return self.outcome == CONTENDED

    def held_by(self, actor: Optional[str]) -> bool:
        """True when the blocking lock already belongs to ``actor``."""
        return self.contended and self.lock is not None and self.lock.created_by == actor


@dataclass(frozen=True)
class ReleaseResult:
    key: LockKey
    removed: bool


# ---------------------------------------------------------------------------
# Deployments
# ---------------------------------------------------------------------------


@dataclass
class Deployment:
    id: int
    ref: str
    sha: str
    environment: str
    noop: bool = False
    auto_merge: bool = True
    required_contexts: List[str] = field(default_factory=list)
    is_production: bool = False
    status: str = "queued"
    history: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class MergeRequired:
    message: str


# ---------------------------------------------------------------------------
# Run context (main run -> post-run) and invocation result
# ---------------------------------------------------------------------------


@dataclass
class RunContext:
    owner: str
    repo: str
    issue_number: Optional[int] = None
    actor: Optional[str] = None
    run_id: Optional[str] = None
    comment_id: Optional[int] = None
    reaction_id: Optional[int] = None
    initial_comment_id: Optional[int] = None
    environment: Optional[str] = None
    environment_url: Optional[str] = None
    ref: Optional[str] = None
    sha: Optional[str] = None
    noop: bool = False
    deployment_id: Optional[int] = None
    deployment_status: Optional[str] = None
    sticky: bool = False
    lock_release_on_completion: bool = False
    bypass: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunContext":
        known = {f.name for f in fields(cls)}
        missing = {"owner", "repo"} - set(data)
        if missing:
            raise ValueError(f"run context missing fields: {sorted(missing)}")
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class InvocationResult:
    outcome: str
    result: str
    context: RunContext
    outputs: Dict[str, Any] = field(default_factory=dict)
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome,
            "result": self.result,
            "message": self.message,
            "outputs": dict(self.outputs),
            "context": self.context.to_dict(),
        }
