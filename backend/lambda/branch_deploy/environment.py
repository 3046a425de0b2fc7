"""environment.py — Resolve the target environment from an IssueOps comment.

Pure functions: the same comment and inputs always resolve the same way.

Deploy shapes (trigger T, environment E, stable branch S, commit sha H):

    T            T E          T to E
    T S          T S E        T S to E
    T H          T H E        T H to E

each optionally followed by ``<separator> params``. Environment names match
case-sensitively against the configured targets.
"""
from __future__ import annotations

import re
import shlex
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from config import LOCK_INFO_FLAGS, LOCK_REASON_FLAG, Inputs
from models import EnvironmentTarget, LockKey
from triggers import trigger_check

__all__ = [
    "LockTarget",
    "parse_params",
    "resolve_environment",
    "resolve_lock_target",
]

_SHA_RE = re.compile(r"^(?:[0-9a-f]{40}|[0-9a-f]{64})$")


@dataclass(frozen=True)
class LockTarget:
    key: Optional[LockKey]
    reason: Optional[str] = None


def _coerce(value: str) -> Any:
    lowered = value.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value


def parse_params(raw: Optional[str]) -> Dict[str, Any]:
    """Parse ``--key=value``, ``--key value`` and ``--flag`` options; positionals go under ``_``."""
    parsed: Dict[str, Any] = {"_": []}
    if not raw:
        return parsed
    try:
        tokens = shlex.split(raw)
    except ValueError:
        tokens = raw.split()

    i = 0
    while i < len(tokens):
        tok = tokens[i]
        if tok.startswith("--") and len(tok) > 2:
            key, eq, value = tok[2:].partition("=")
            if eq:
                parsed[key] = _coerce(value)
            elif i + 1 < len(tokens) and not tokens[i + 1].startswith("-"):
                parsed[key] = _coerce(tokens[i + 1])
                i += 1
            else:
                parsed[key] = True
        else:
            parsed["_"].append(_coerce(tok))
        i += 1
    return parsed


def _match_trigger(text: str, triggers: Sequence[str]) -> Optional[str]:
    # longest first so ".deploy" never shadows a ".deploy-fast" style trigger
    for trigger in sorted((t for t in triggers if t), key=len, reverse=True):
        if trigger_check(text, trigger):
            return trigger
    return None


def resolve_environment(body: str, triggers: Sequence[str], inputs: Inputs) -> EnvironmentTarget:
    """Resolve the deploy target named by ``body``.

    Returns ``environment=None`` when the comment names an unknown target or
    names none and no default is configured; the caller safe-exits.
    """
    text = body.strip()
    params: Optional[str] = None
    if inputs.param_separator and inputs.param_separator in text:
        text, raw_params = text.split(inputs.param_separator, 1)
        text = text.strip()
        params = raw_params.strip() or None

    trigger = _match_trigger(text, triggers)
    if trigger is None:
        return EnvironmentTarget(environment=None)

    tokens = text[len(trigger):].split()
    stable_branch_used = False
    sha: Optional[str] = None
    if tokens and inputs.stable_branch and tokens[0] == inputs.stable_branch:
        stable_branch_used = True
        tokens = tokens[1:]
    elif tokens and inputs.allow_sha_deployments and _SHA_RE.match(tokens[0]):
        sha = tokens[0]
        tokens = tokens[1:]

    if len(tokens) == 2 and tokens[0] == "to":
        tokens = tokens[1:]

    environment: Optional[str]
    if not tokens:
        environment = inputs.environment or None
    elif len(tokens) == 1 and tokens[0] in inputs.environment_targets:
        environment = tokens[0]
    else:
        environment = None

    if environment is None:
        return EnvironmentTarget(environment=None, stable_branch_used=stable_branch_used, sha=sha, params=params)

    return EnvironmentTarget(
        environment=environment,
        stable_branch_used=stable_branch_used,
        sha=sha,
        params=params,
        parsed_params=parse_params(params),
        environment_url=inputs.environment_urls.get(environment),
    )


def resolve_lock_target(body: str, trigger: str, inputs: Inputs) -> LockTarget:
    """Resolve ``.lock``/``.unlock``/info comments to a lock key and optional reason.

    ``key`` is None when the comment names an environment that is not configured.
    """
    text = body.strip()
    if trigger and trigger_check(text, trigger):
        text = text[len(trigger):]
    tokens = text.split()

    reason: Optional[str] = None
    if LOCK_REASON_FLAG in tokens:
        idx = tokens.index(LOCK_REASON_FLAG)
        reason = " ".join(tokens[idx + 1:]) or None
        tokens = tokens[:idx]
    tokens = [tok for tok in tokens if tok not in LOCK_INFO_FLAGS]

    if inputs.global_lock_flag and inputs.global_lock_flag in tokens:
        return LockTarget(key=LockKey(None), reason=reason)
    if not tokens:
        if not inputs.environment:
            return LockTarget(key=None, reason=reason)
        return LockTarget(key=LockKey(inputs.environment), reason=reason)
    if len(tokens) == 1 and tokens[0] in inputs.environment_targets:
        return LockTarget(key=LockKey(tokens[0]), reason=reason)
    return LockTarget(key=None, reason=reason)
