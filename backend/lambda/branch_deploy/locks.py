"""locks.py — Deployment lock coordinator backed by git refs.

A lock is the branch ``<environment>-branch-deploy-lock`` (or
``global-branch-deploy-lock``) whose single commit carries ``lock.json``.
Ref existence is lock existence.

Acquisition writes the blob, tree and commit first; they stay unreachable
until ``POST /git/refs`` succeeds. GitHub's ref creation fails with 422 when
the ref already exists, so concurrent acquirers of the same key are ordered
by that single call and exactly one of them wins. Nothing here retries a
lost race: contention is returned to the caller as a ``LockResult``.

Policy helpers:

- ``effective_sticky`` maps (noop, sticky_locks, sticky_locks_for_noop) to the
  lock lifetime used for a deploy.
- ``release_on_completion`` decides whether the post-run step frees the lock.
"""
from __future__ import annotations

import json
import re
from typing import Optional

from config import GITHUB_SERVER_URL, GLOBAL_LOCK_BRANCH, LOCK_BRANCH_SUFFIX, LOCK_FILE, Inputs, logger
from github_client import GitHubApiError
from models import ACQUIRED, CONTENDED, Lock, LockKey, LockResult, ReleaseResult
from serialization import _now_z, _time_diff

__all__ = [
    "acquire",
    "build_lock",
    "describe",
    "effective_sticky",
    "inspect",
    "inspect_effective",
    "lock_branch_name",
    "lock_file_url",
    "release",
    "release_on_completion",
    "sanitize_branch_name",
    "unlock_command",
]

_INVALID_BRANCH_CHARS = re.compile(r"[^A-Za-z0-9._/-]")


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------


def sanitize_branch_name(name: str) -> str:
    """Turn an environment name into something git accepts as a branch component."""
    cleaned = re.sub(r"\s+", "-", name.strip())
    cleaned = _INVALID_BRANCH_CHARS.sub("", cleaned)
    cleaned = re.sub(r"\.{2,}", ".", cleaned).strip("./-")
    if not cleaned:
        raise ValueError(f"Environment name '{name}' cannot be used as a lock branch")
    return cleaned


def lock_branch_name(key: LockKey) -> str:
    if key.is_global:
        return GLOBAL_LOCK_BRANCH
    branch = f"{sanitize_branch_name(str(key.environment))}-{LOCK_BRANCH_SUFFIX}"
    if branch == GLOBAL_LOCK_BRANCH:
        raise ValueError(f"Environment '{key.environment}' collides with the global deploy lock")
    return branch


def lock_file_url(owner: str, repo: str, key: LockKey) -> str:
    return f"{GITHUB_SERVER_URL}/{owner}/{repo}/blob/{lock_branch_name(key)}/{LOCK_FILE}"


def unlock_command(key: LockKey, inputs: Inputs) -> str:
    if key.is_global:
        return f"{inputs.unlock_trigger} {inputs.global_lock_flag}"
    return f"{inputs.unlock_trigger} {key.environment}"


def build_lock(
    key: LockKey,
    actor: str,
    sticky: bool,
    inputs: Inputs,
    branch: Optional[str] = None,
    reason: Optional[str] = None,
    link: Optional[str] = None,
) -> Lock:
    return Lock(
        environment=key.environment,
        global_lock=key.is_global,
        sticky=sticky,
        created_by=actor,
        created_at=_now_z(),
        reason=reason,
        branch=branch,
        link=link,
        unlock_command=unlock_command(key, inputs),
    )


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


def effective_sticky(noop: bool, sticky_locks: bool, sticky_locks_for_noop: bool) -> bool:
    """Lock lifetime for a deploy: noop runs follow ``sticky_locks_for_noop`` only."""
    if noop:
        return sticky_locks_for_noop
    return sticky_locks


def release_on_completion(result: LockResult, sticky: bool) -> bool:
    """Only a one-shot lock this run created is freed when the deployment ends."""
    return result.acquired and not sticky


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def inspect(gh, key: LockKey) -> Optional[Lock]:
    """Current lock for ``key`` or None. Read-only."""
    text = gh.get_file(LOCK_FILE, lock_branch_name(key))
    if text is None:
        return None
    try:
        return Lock.from_payload(json.loads(text))
    except (json.JSONDecodeError, ValueError) as exc:
        raise ValueError(f"Unreadable lock metadata on '{lock_branch_name(key)}': {exc}") from exc


def inspect_effective(gh, environment: Optional[str]) -> Optional[Lock]:
    """The lock that currently governs ``environment``: the global lock wins."""
    global_lock = inspect(gh, LockKey(None))
    if global_lock is not None or environment is None:
        return global_lock
    return inspect(gh, LockKey(environment))


def describe(lock: Lock, now: Optional[str] = None) -> str:
    """How long ``lock`` has been held, e.g. ``0d:2h:5m:13s``."""
    return _time_diff(lock.created_at, now)


# ---------------------------------------------------------------------------
# Acquire / release
# ---------------------------------------------------------------------------


def _create_lock_ref(gh, key: LockKey, lock: Lock) -> bool:
    """Publish ``lock`` under the key's ref. False when the ref already exists."""
    content = json.dumps(lock.to_payload(), indent=2, sort_keys=True) + "\n"
    blob_sha = gh.create_blob(content)
    tree_sha = gh.create_tree([{"path": LOCK_FILE, "mode": "100644", "type": "blob", "sha": blob_sha}])
    commit_sha = gh.create_commit(f"lock: {key} claimed by {lock.created_by}", tree_sha, [])
    try:
        gh.create_ref(lock_branch_name(key), commit_sha)
    except GitHubApiError as exc:
        if exc.status == 422 and "already exists" in str(exc).lower():
            return False
        raise
    return True


def acquire(gh, key: LockKey, lock: Lock) -> LockResult:
    """Try to take ``key`` on behalf of ``lock.created_by``.

    Outcomes:
        acquired   the ref was created by this call
        contended  the ref already exists, or a global lock covers ``key``;
                   ``LockResult.lock`` names the holder, who may be the
                   requester itself
    """
    actor = lock.created_by
    if not key.is_global:
        global_lock = inspect(gh, LockKey(None))
        if global_lock is not None:
            logger.info("[INFO] global lock held by %s blocks %s", global_lock.created_by, key)
            return LockResult(CONTENDED, key, global_lock)

    if not _create_lock_ref(gh, key, lock):
        holder = inspect(gh, key)
        logger.info(
            "[INFO] lock contention key=%s holder=%s",
            key, holder.created_by if holder else "unknown",
        )
        return LockResult(CONTENDED, key, holder)

    if not key.is_global:
        # a global lock taken between our first check and the ref write still wins
        late_global = inspect(gh, LockKey(None))
        if late_global is not None:
            logger.warning(
                "[WARNING] global lock by %s appeared while acquiring %s; backing out",
                late_global.created_by, key,
            )
            release(gh, key)
            return LockResult(CONTENDED, key, late_global)

    logger.info("[INFO] lock acquired key=%s actor=%s sticky=%s", key, actor, lock.sticky)
    return LockResult(ACQUIRED, key, lock)


def release(gh, key: LockKey) -> ReleaseResult:
    """Delete the lock ref. Releasing an absent lock is a no-op."""
    try:
        gh.delete_ref(lock_branch_name(key))
    except GitHubApiError as exc:
        if exc.status in (404, 422):
            logger.info("[INFO] no lock to release for %s", key)
            return ReleaseResult(key, removed=False)
        raise
    logger.info("[INFO] lock released key=%s", key)
    return ReleaseResult(key, removed=True)
