"""triggers.py — Trigger detection for IssueOps comments."""
from __future__ import annotations

from typing import Sequence

from config import LOCK_INFO_FLAGS, LOCK_REASON_FLAG, Inputs
from models import Command

__all__ = [
    "detect_command",
    "has_lock_info_flag",
    "naked_command_check",
    "trigger_check",
]


def trigger_check(body: str, trigger: str) -> bool:
    """True when ``body`` starts with ``trigger`` followed by whitespace or the end."""
    if not trigger:
        return False
    text = body.strip()
    if not text.startswith(trigger):
        return False
    rest = text[len(trigger):]
    return rest == "" or rest[0].isspace()


def has_lock_info_flag(body: str) -> bool:
    """Info flags count only before ``--reason``; the reason text is free-form."""
    tokens = body.split()
    if LOCK_REASON_FLAG in tokens:
        tokens = tokens[: tokens.index(LOCK_REASON_FLAG)]
    return any(tok in LOCK_INFO_FLAGS for tok in tokens)


def detect_command(body: str, inputs: Inputs) -> Command:
    """Classify a comment once; the environment is resolved per command kind."""
    if trigger_check(body, inputs.trigger):
        return Command("deploy")
    if trigger_check(body, inputs.noop_trigger):
        return Command("noop")
    if trigger_check(body, inputs.lock_trigger):
        return Command("lockInfo" if has_lock_info_flag(body) else "lock")
    if trigger_check(body, inputs.unlock_trigger):
        return Command("unlock")
    if trigger_check(body, inputs.help_trigger):
        return Command("help")
    if trigger_check(body, inputs.lock_info_alias):
        return Command("lockInfo")
    return Command("none")


def naked_command_check(body: str, separator: str, triggers: Sequence[str], global_flag: str) -> bool:
    """True when the comment is a bare trigger that does not name an environment."""
    command = body.strip()
    if separator and separator in command:
        command = command.split(separator, 1)[0]
    tokens = command.split()
    if LOCK_REASON_FLAG in tokens:
        tokens = tokens[: tokens.index(LOCK_REASON_FLAG)]
    tokens = [tok for tok in tokens if tok not in LOCK_INFO_FLAGS]
    if global_flag in tokens:
        return False
    bare = " ".join(tokens)
    return any(trigger and bare == trigger for trigger in triggers)
