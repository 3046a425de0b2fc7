"""messages.py — Markdown bodies for pull request comments."""
from __future__ import annotations

from typing import Iterable, Optional

from models import Lock, LockKey, OrderResult

__all__ = [
    "deployment_error_message",
    "deployment_results_message",
    "deployment_triggered_message",
    "invalid_order_message",
    "lock_claimed_message",
    "lock_contention_message",
    "lock_details_message",
    "lock_owned_message",
    "merge_required_message",
    "naked_command_message",
    "no_environment_message",
    "no_lock_message",
    "unlock_message",
    "unlock_on_merge_message",
]


def _lines(*parts: Optional[str]) -> str:
    return "\n".join(p for p in parts if p is not None)


def _target_label(key: LockKey) -> str:
    return "global" if key.is_global else f"`{key.environment}`"


def lock_claimed_message(lock: Lock, key: LockKey) -> str:
    scope = "all environments" if key.is_global else f"the `{key.environment}` environment"
    return _lines(
        "### 🔒 Deployment Lock Claimed",
        "",
        f"__{lock.created_by}__, you are now the only user that can trigger deployments to {scope} "
        "until the deployment lock is removed",
        "",
        f"> This lock is _sticky_ and will persist until someone runs `{lock.unlock_command}`"
        if lock.sticky else "> This lock will be released when the deployment finishes",
    )


def lock_owned_message(lock: Lock) -> str:
    scope = "global deployment lock" if lock.global_lock else f"`{lock.environment}` deployment lock"
    return _lines(
        "### 🔒 Deployment Lock Information",
        "",
        f"__{lock.created_by}__, you are already the owner of the current {scope}",
        "",
        f"> If you need to release the lock, please comment `{lock.unlock_command}`",
    )


def lock_contention_message(requested: LockKey, lock: Optional[Lock], lock_url: Optional[str] = None) -> str:
    if lock is None:
        return _lines(
            "### ⚠️ Cannot claim deployment lock",
            "",
            f"The {_target_label(requested)} deployment lock changed hands while it was being claimed. "
            "Please check the lock status and try again.",
        )
    if lock.global_lock:
        headline = f"A **global** deployment lock is currently claimed by __{lock.created_by}__"
        env_line = "- __Environments__: `all`\n- __Global__: `true`"
    else:
        headline = f"The `{lock.environment}` environment deployment lock is currently claimed by __{lock.created_by}__"
        env_line = f"- __Environment__: `{lock.environment}`"
    return _lines(
        "### ⚠️ Cannot claim deployment lock",
        "",
        headline,
        "",
        f"- __Reason__: `{lock.reason}`",
        f"- __Branch__: `{lock.branch}`",
        f"- __Created At__: `{lock.created_at}`",
        f"- __Created By__: `{lock.created_by}`",
        f"- __Sticky__: `{lock.sticky}`",
        env_line,
        f"- __Comment Link__: [click here]({lock.link})",
        f"- __Lock Link__: [click here]({lock_url})" if lock_url else None,
        "",
        "> A deployment cannot be triggered while the lock is held by another user",
    )


def lock_details_message(lock: Lock, lock_url: str, elapsed: str) -> str:
    global_msg = None
    env_line = f"- __Environment__: `{lock.environment}`"
    if lock.global_lock:
        global_msg = "\nThis is a **global** deploy lock - All environments are currently locked\n"
        env_line = "- __Environments__: `all`\n- __Global__: `true`"
    return _lines(
        "### Lock Details 🔒",
        "",
        f"The deployment lock is currently claimed by __{lock.created_by}__",
        global_msg,
        "",
        f"- __Reason__: `{lock.reason}`",
        f"- __Branch__: `{lock.branch}`",
        f"- __Created At__: `{lock.created_at}`",
        f"- __Created By__: `{lock.created_by}`",
        f"- __Sticky__: `{lock.sticky}`",
        env_line,
        f"- __Comment Link__: [click here]({lock.link})",
        f"- __Lock Link__: [click here]({lock_url})",
        "",
        f"The current lock has been active for `{elapsed}`",
        "",
        f"> If you need to release the lock, please comment `{lock.unlock_command}`",
    )


def no_lock_message(key: LockKey, full_name: str, lock_command: str) -> str:
    target = "global" if key.is_global else str(key.environment)
    return _lines(
        "### Lock Details 🔒",
        "",
        f"No active `{target}` deployment locks found for the `{full_name}` repository",
        "",
        f"> If you need to create a `{target}` lock, please comment `{lock_command}`",
    )


def unlock_message(key: LockKey, removed: bool) -> str:
    if not removed:
        return f"🔓 There is currently no {_target_label(key)} deployment lock set"
    scope = "global" if key.is_global else f"`{key.environment}`"
    return _lines(
        "### 🔓 Deployment Lock Removed",
        "",
        f"The {scope} deployment lock has been successfully removed",
    )


def deployment_triggered_message(actor: str, deployment_type: str, environment: str, ref: str, log_url: str) -> str:
    return _lines(
        "### Deployment Triggered 🚀",
        "",
        f"__{actor}__, started a __{deployment_type.lower()}__ deployment to __{environment}__",
        "",
        f"You can watch the progress [here]({log_url}) 🔗",
        "",
        f"> __{deployment_type}__: `{ref}`",
    )


def invalid_order_message(environment: str, order: OrderResult) -> str:
    entries = "\n".join(
        f"- {'🟢' if entry.active else '🔴'} **{entry.environment}**" for entry in order.results
    )
    return _lines(
        "### 🚦 Invalid Deployment Order",
        "",
        f"The deployment to `{environment}` cannot proceed as the following environments need successful deployments first:",
        "",
        entries,
    )


def merge_required_message(message: str) -> str:
    return _lines(
        "### ⚠️ Deployment Warning",
        "",
        f"- Message: {message}",
        "- Note: If you have required CI checks, you may need to manually push a commit to re-run them",
        "",
        "> Deployment will not continue. Please try again once this branch is up-to-date with the base branch",
    )


def no_environment_message(body: str, targets: Iterable[str]) -> str:
    return _lines(
        "### ⚠️ Cannot proceed with deployment",
        "",
        f"No matching environment target found for `{body.strip()}`",
        "",
        f"> Valid environment targets: `{', '.join(targets)}`",
    )


def naked_command_message(body: str, default_environment: str) -> str:
    return _lines(
        "### ⚠️ Missing Explicit Environment",
        "",
        f"`{body.strip()}` does not name an environment and naked commands are disabled in this repository.",
        "",
        f"> Try again with an explicit environment, e.g. `{body.strip()} {default_environment}`",
    )


def deployment_results_message(
    actor: Optional[str],
    environment: str,
    ref: str,
    status: str,
    noop: bool,
    log_url: Optional[str],
    environment_url: Optional[str] = None,
    deployment_message: Optional[str] = None,
) -> str:
    ok = status == "success"
    mode = "noop deployed" if noop else "deployed"
    outcome = f"successfully {mode}" if ok else f"failed to {'noop deploy' if noop else 'deploy'}"
    return _lines(
        f"### Deployment Results {'✅' if ok else '❌'}",
        "",
        f"**{actor or 'branch-deploy'}** {outcome} branch `{ref}` to **{environment}**",
        f"\n[Environment]({environment_url})" if environment_url and ok and not noop else None,
        f"\n{deployment_message}" if deployment_message else None,
        f"\n> [Run logs]({log_url})" if log_url else None,
    )


def unlock_on_merge_message(released: Iterable[str]) -> str:
    envs = list(released)
    if not envs:
        return "🔓 No deployment locks were held by this pull request"
    return _lines(
        "### 🔓 Deployment Locks Released",
        "",
        "The following deployment locks were held by this pull request and have been removed after merge:",
        "",
        "\n".join(f"- `{env}`" for env in envs),
    )


def deployment_error_message(error: Exception, log_url: str) -> str:
    return _lines(
        "### ❌ Deployment Error",
        "",
        "An unexpected error occurred:",
        "",
        f"```\n{error}\n```",
        "",
        f"> [Run logs]({log_url})",
    )
