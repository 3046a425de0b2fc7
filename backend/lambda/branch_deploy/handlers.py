"""handlers.py — Command dispatcher for IssueOps comments and merged pull requests.

``run_main`` is the main run: it classifies one ``issue_comment`` webhook,
walks the deploy pipeline (resolve → prechecks → commit safety → order →
lock → deployment) or one of the lock/help branches, and returns exactly
one terminal ``InvocationResult``. The ``RunContext`` it returns is what
the post-run step receives; nothing else carries state between phases.

Outcome → result string:

    deploy-started      success
    noop-started        success - noop
    lock-acquired       safe-exit
    lock-info-reported  safe-exit
    unlocked            safe-exit
    help-shown          safe-exit
    safe-exit           safe-exit
    permission-denied   failure
    precheck-failed     failure
    order-failed        failure
    fatal               failure
"""
from __future__ import annotations

from typing import Any, Dict, Optional

import locks
import messages
from aws_clients import _get_eb
from config import (
    DEPLOY_EVENT_BUS,
    DEPLOY_EVENT_DETAIL_TYPE,
    DEPLOY_EVENT_SOURCE,
    Inputs,
    logger,
)
from deployment import create_deployment, latest_deployment, set_status
from deployment_order import valid_deployment_order
from environment import resolve_environment, resolve_lock_target
from models import Command, Deployment, InvocationResult, Lock, LockKey, MergeRequired, RunContext
from prechecks import commit_safety_check, prechecks
from reporting import action_status, help_text, permission_check, react, report_error, run_log_url
from serialization import _json_dumps, _now_z
from triggers import detect_command, naked_command_check, trigger_check

__all__ = [
    "RESULTS",
    "run_main",
    "run_merge_deploy",
    "run_unlock_on_merge",
]

RESULTS = {
    "deploy-started": "success",
    "noop-started": "success - noop",
    "lock-acquired": "safe-exit",
    "lock-info-reported": "safe-exit",
    "unlocked": "safe-exit",
    "help-shown": "safe-exit",
    "safe-exit": "safe-exit",
    "permission-denied": "failure",
    "precheck-failed": "failure",
    "order-failed": "failure",
    "fatal": "failure",
}

_UNLOCK_ON_MERGE_RESULT = "success - unlock on merge mode"
_MERGE_DEPLOY_RESULT = "success - merge deploy mode"


def _finish(outcome: str, ctx: RunContext, outputs: Dict[str, Any], message: str = "") -> InvocationResult:
    result = RESULTS[outcome]
    logger.info("[INFO] run %s finished outcome=%s result=%s", ctx.run_id, outcome, result)
    return InvocationResult(outcome=outcome, result=result, context=ctx, outputs=outputs, message=message)


def _publish_deployment_started(ctx: RunContext, outputs: Dict[str, Any]) -> None:
    """Hand the job to the deploy runner. Best effort: the deployment already exists."""
    if not DEPLOY_EVENT_BUS:
        return
    try:
        _get_eb().put_events(
            Entries=[
                {
                    "Source": DEPLOY_EVENT_SOURCE,
                    "DetailType": DEPLOY_EVENT_DETAIL_TYPE,
                    "EventBusName": DEPLOY_EVENT_BUS,
                    "Detail": _json_dumps({
                        "context": ctx.to_dict(),
                        "outputs": outputs,
                        "timestamp": _now_z(),
                    }),
                }
            ]
        )
    except Exception as exc:
        logger.warning("[WARNING] failed publishing deployment event for run %s: %s", ctx.run_id, exc)


# ---------------------------------------------------------------------------
# Main run
# ---------------------------------------------------------------------------


def run_main(event_payload: Dict[str, Any], inputs: Inputs, gh, run_id: Optional[str]) -> InvocationResult:
    """Handle one ``issue_comment`` event. Never raises."""
    ctx = RunContext(owner=gh.owner, repo=gh.repo, run_id=run_id)
    outputs: Dict[str, Any] = {"triggered": False, "continue": False}
    try:
        return _dispatch(event_payload, inputs, gh, ctx, outputs)
    except Exception as exc:
        logger.exception("[ERROR] run %s failed: %s", run_id, exc)
        ctx.bypass = True
        _fatal_cleanup(gh, ctx, exc)
        return _finish("fatal", ctx, outputs, message=str(exc))


def _fatal_cleanup(gh, ctx: RunContext, exc: Exception) -> None:
    # nothing will run the post step after a fatal error, so free a one-shot lock here
    if ctx.lock_release_on_completion and ctx.environment:
        try:
            locks.release(gh, LockKey(ctx.environment))
            ctx.lock_release_on_completion = False
        except Exception as release_exc:
            logger.error("[ERROR] could not release %s lock after failure: %s", ctx.environment, release_exc)
    report_error(gh, ctx, exc)


def _dispatch(payload: Dict[str, Any], inputs: Inputs, gh, ctx: RunContext, outputs: Dict[str, Any]) -> InvocationResult:
    issue = payload.get("issue") or {}
    comment = payload.get("comment") or {}
    if payload.get("action") != "created" or not issue.get("pull_request"):
        logger.info("[INFO] ignoring event: not a new pull request comment")
        return _finish("safe-exit", ctx, outputs, message="not a new pull request comment")

    body = str(comment.get("body") or "").strip()
    ctx.issue_number = issue.get("number")
    ctx.comment_id = comment.get("id")
    ctx.actor = (comment.get("user") or {}).get("login")
    outputs.update({"comment_id": ctx.comment_id, "actor_handle": ctx.actor, "comment_body": body})

    naked_triggers = [
        inputs.trigger, inputs.noop_trigger, inputs.lock_trigger,
        inputs.unlock_trigger, inputs.lock_info_alias,
    ]
    if inputs.disable_naked_commands and naked_command_check(
        body, inputs.param_separator, naked_triggers, inputs.global_lock_flag
    ):
        outputs["naked_command"] = True
        action_status(
            gh, ctx.issue_number, ctx.comment_id, None,
            messages.naked_command_message(body, inputs.environment),
        )
        return _finish("safe-exit", ctx, outputs, message="naked command")

    command = detect_command(body, inputs)
    if command.kind == "none":
        return _finish("safe-exit", ctx, outputs, message="no trigger found")

    outputs.update({"triggered": True, "type": command.kind})
    ctx.reaction_id = react(gh, ctx.comment_id, inputs.reaction)

    allowed = permission_check(gh, ctx.actor, inputs.permissions)
    if allowed is not True:
        action_status(gh, ctx.issue_number, ctx.comment_id, ctx.reaction_id, allowed)
        return _finish("permission-denied", ctx, outputs, message=allowed)

    if command.kind == "help":
        action_status(gh, ctx.issue_number, ctx.comment_id, ctx.reaction_id, help_text(inputs), success=True, alt_reaction=True)
        return _finish("help-shown", ctx, outputs)

    if command.kind == "lock":
        return _handle_lock(body, comment, inputs, gh, ctx, outputs)
    if command.kind == "unlock":
        return _handle_unlock(body, inputs, gh, ctx, outputs)
    if command.kind == "lockInfo":
        return _handle_lock_info(body, inputs, gh, ctx, outputs)
    return _handle_deploy(command, body, comment, inputs, gh, ctx, outputs)


# ---------------------------------------------------------------------------
# Lock commands
# ---------------------------------------------------------------------------


def _holder_key(requested: LockKey, lock: Optional[Lock]) -> LockKey:
    if lock is None:
        return requested
    return LockKey(None if lock.global_lock else lock.environment)


def _invalid_target(body: str, inputs: Inputs, gh, ctx: RunContext, outputs: Dict[str, Any]) -> InvocationResult:
    action_status(
        gh, ctx.issue_number, ctx.comment_id, ctx.reaction_id,
        messages.no_environment_message(body, inputs.environment_targets),
    )
    return _finish("safe-exit", ctx, outputs, message="no matching environment target")


def _handle_lock(body: str, comment: Dict[str, Any], inputs: Inputs, gh, ctx: RunContext, outputs: Dict[str, Any]) -> InvocationResult:
    target = resolve_lock_target(body, inputs.lock_trigger, inputs)
    if target.key is None:
        return _invalid_target(body, inputs, gh, ctx, outputs)

    pr = gh.get_pull(ctx.issue_number)
    lock = locks.build_lock(
        target.key,
        ctx.actor,
        sticky=True,
        inputs=inputs,
        branch=(pr.get("head") or {}).get("ref"),
        reason=target.reason,
        link=comment.get("html_url"),
    )
    result = locks.acquire(gh, target.key, lock)
    outputs["environment"] = target.key.environment

    if result.held_by(ctx.actor):
        # nothing was written; the existing lock is only reported back
        action_status(
            gh, ctx.issue_number, ctx.comment_id, ctx.reaction_id,
            messages.lock_owned_message(result.lock), success=True, alt_reaction=True,
        )
        return _finish("lock-acquired", ctx, outputs, message="lock already held by requester")

    if result.contended:
        url = locks.lock_file_url(gh.owner, gh.repo, _holder_key(target.key, result.lock))
        action_status(
            gh, ctx.issue_number, ctx.comment_id, ctx.reaction_id,
            messages.lock_contention_message(target.key, result.lock, url),
        )
        return _finish("safe-exit", ctx, outputs, message="lock contended")

    body_text = messages.lock_claimed_message(result.lock, target.key)
    action_status(gh, ctx.issue_number, ctx.comment_id, ctx.reaction_id, body_text, success=True, alt_reaction=True)
    return _finish("lock-acquired", ctx, outputs)


def _handle_unlock(body: str, inputs: Inputs, gh, ctx: RunContext, outputs: Dict[str, Any]) -> InvocationResult:
    target = resolve_lock_target(body, inputs.unlock_trigger, inputs)
    if target.key is None:
        return _invalid_target(body, inputs, gh, ctx, outputs)

    released = locks.release(gh, target.key)
    outputs["environment"] = target.key.environment
    action_status(
        gh, ctx.issue_number, ctx.comment_id, ctx.reaction_id,
        messages.unlock_message(target.key, released.removed),
        success=True, alt_reaction=True,
    )
    return _finish("unlocked", ctx, outputs)


def _handle_lock_info(body: str, inputs: Inputs, gh, ctx: RunContext, outputs: Dict[str, Any]) -> InvocationResult:
    trigger = inputs.lock_info_alias if trigger_check(body, inputs.lock_info_alias) else inputs.lock_trigger
    target = resolve_lock_target(body, trigger, inputs)
    if target.key is None:
        return _invalid_target(body, inputs, gh, ctx, outputs)

    if target.key.is_global:
        lock = locks.inspect(gh, target.key)
    else:
        lock = locks.inspect_effective(gh, target.key.environment)

    if lock is None:
        flag = inputs.global_lock_flag if target.key.is_global else target.key.environment
        text = messages.no_lock_message(target.key, gh.full_name, f"{inputs.lock_trigger} {flag}")
    else:
        text = messages.lock_details_message(
            lock, locks.lock_file_url(gh.owner, gh.repo, _holder_key(target.key, lock)), locks.describe(lock)
        )
    outputs["environment"] = target.key.environment
    action_status(gh, ctx.issue_number, ctx.comment_id, ctx.reaction_id, text, success=True, alt_reaction=True)
    return _finish("lock-info-reported", ctx, outputs)


# ---------------------------------------------------------------------------
# Deploy / noop
# ---------------------------------------------------------------------------


def _deployment_type(noop: bool, sha: Optional[str]) -> str:
    if noop:
        return "Noop"
    return "SHA" if sha else "Branch"


def _handle_deploy(
    command: Command,
    body: str,
    comment: Dict[str, Any],
    inputs: Inputs,
    gh,
    ctx: RunContext,
    outputs: Dict[str, Any],
) -> InvocationResult:
    noop = command.kind == "noop"
    trigger = inputs.noop_trigger if noop else inputs.trigger
    target = resolve_environment(body, [trigger], inputs)
    if target.environment is None:
        return _invalid_target(body, inputs, gh, ctx, outputs)

    ctx.environment = target.environment
    ctx.environment_url = target.environment_url
    ctx.noop = noop
    outputs.update({
        "environment": target.environment,
        "environment_url": target.environment_url,
        "params": target.params,
        "parsed_params": target.parsed_params,
        "noop": noop,
    })

    pre = prechecks(gh, ctx.issue_number, ctx.actor, target, noop, inputs)
    if not pre.status:
        action_status(gh, ctx.issue_number, ctx.comment_id, ctx.reaction_id, pre.message)
        return _finish("precheck-failed", ctx, outputs, message=pre.message)

    ctx.ref = pre.ref
    ctx.sha = pre.sha
    outputs.update({"ref": pre.ref, "sha": pre.sha})

    safety = commit_safety_check(gh.get_commit(pre.sha), comment.get("created_at"), inputs)
    if not safety.status:
        action_status(gh, ctx.issue_number, ctx.comment_id, ctx.reaction_id, safety.message)
        return _finish("precheck-failed", ctx, outputs, message=safety.message)

    if inputs.enforced_deployment_order and not target.stable_branch_used:
        order = valid_deployment_order(gh, inputs.enforced_deployment_order, target.environment, pre.sha)
        if not order.valid:
            text = messages.invalid_order_message(target.environment, order)
            action_status(gh, ctx.issue_number, ctx.comment_id, ctx.reaction_id, text)
            return _finish("order-failed", ctx, outputs, message=text)

    key = LockKey(target.environment)
    sticky = locks.effective_sticky(noop, inputs.sticky_locks, inputs.sticky_locks_for_noop)
    lock = locks.build_lock(key, ctx.actor, sticky, inputs, branch=pre.ref, link=comment.get("html_url"))
    held = locks.acquire(gh, key, lock)
    if held.contended:
        url = locks.lock_file_url(gh.owner, gh.repo, _holder_key(key, held.lock))
        action_status(
            gh, ctx.issue_number, ctx.comment_id, ctx.reaction_id,
            messages.lock_contention_message(key, held.lock, url),
        )
        return _finish("safe-exit", ctx, outputs, message="lock contended")

    ctx.sticky = sticky
    ctx.lock_release_on_completion = locks.release_on_completion(held, sticky)

    log_url = run_log_url(gh.owner, gh.repo, ctx.run_id)
    started = gh.create_comment(
        ctx.issue_number,
        messages.deployment_triggered_message(
            ctx.actor, _deployment_type(noop, target.sha), target.environment, pre.ref, log_url
        ),
    )
    ctx.initial_comment_id = started.get("id")
    outputs["initial_comment_id"] = ctx.initial_comment_id

    if noop:
        ctx.bypass = False
        _publish_deployment_started(ctx, outputs)
        return _finish("noop-started", ctx, outputs)

    created = create_deployment(
        gh, target.environment, pre.ref, pre.sha, inputs,
        params=target.params, parsed_params=target.parsed_params, sha_deploy=bool(target.sha),
    )
    if isinstance(created, MergeRequired):
        if ctx.lock_release_on_completion:
            locks.release(gh, key)
            ctx.lock_release_on_completion = False
        action_status(
            gh, ctx.issue_number, ctx.comment_id, ctx.reaction_id,
            messages.merge_required_message(created.message),
        )
        return _finish("safe-exit", ctx, outputs, message=created.message)

    deployment: Deployment = set_status(gh, created, "in_progress", log_url=log_url, environment_url=target.environment_url)
    ctx.deployment_id = deployment.id
    ctx.deployment_status = deployment.status
    ctx.bypass = False
    outputs["deployment_id"] = deployment.id
    _publish_deployment_started(ctx, outputs)
    return _finish("deploy-started", ctx, outputs)


# ---------------------------------------------------------------------------
# Merged pull requests
# ---------------------------------------------------------------------------


def run_unlock_on_merge(event_payload: Dict[str, Any], inputs: Inputs, gh, run_id: Optional[str]) -> InvocationResult:
    """Release every environment lock whose branch is the merged PR's head branch."""
    pr = event_payload.get("pull_request") or {}
    ctx = RunContext(owner=gh.owner, repo=gh.repo, run_id=run_id, issue_number=pr.get("number"))
    outputs: Dict[str, Any] = {"triggered": False, "continue": False}
    if event_payload.get("action") != "closed" or not pr.get("merged"):
        return _finish("safe-exit", ctx, outputs, message="pull request not merged")

    head_ref = (pr.get("head") or {}).get("ref")
    released = []
    for env in inputs.environment_targets:
        lock = locks.inspect(gh, LockKey(env))
        if lock is None or lock.branch != head_ref:
            continue
        if locks.release(gh, LockKey(env)).removed:
            released.append(env)

    logger.info("[INFO] unlock on merge #%s branch=%s released=%s", ctx.issue_number, head_ref, released)
    if released:
        gh.create_comment(ctx.issue_number, messages.unlock_on_merge_message(released))
    outputs["unlocked_environments"] = released
    return InvocationResult(
        outcome="unlocked", result=_UNLOCK_ON_MERGE_RESULT, context=ctx, outputs=outputs,
    )


def run_merge_deploy(event_payload: Dict[str, Any], inputs: Inputs, gh, run_id: Optional[str]) -> InvocationResult:
    """Decide whether the default branch needs a deploy after a merge.

    ``continue`` is True unless the default environment's newest deployment
    is already ACTIVE at the default branch head.
    """
    pr = event_payload.get("pull_request") or {}
    ctx = RunContext(owner=gh.owner, repo=gh.repo, run_id=run_id, issue_number=pr.get("number"))
    outputs: Dict[str, Any] = {"triggered": False, "continue": False, "environment": inputs.environment}
    if event_payload.get("action") != "closed" or not pr.get("merged"):
        return _finish("safe-exit", ctx, outputs, message="pull request not merged")

    default_branch = (event_payload.get("repository") or {}).get("default_branch") or gh.get_repo().get("default_branch")
    head_sha = ((gh.get_branch(default_branch) or {}).get("commit") or {}).get("sha")
    node = latest_deployment(gh, inputs.environment)
    deployed_sha = ((node or {}).get("commit") or {}).get("oid")
    identical = node is not None and node.get("state") == "ACTIVE" and deployed_sha == head_sha

    ctx.environment = inputs.environment
    ctx.ref = default_branch
    ctx.sha = head_sha
    outputs.update({"continue": not identical, "ref": default_branch, "sha": head_sha})
    logger.info(
        "[INFO] merge deploy check env=%s head=%s deployed=%s continue=%s",
        inputs.environment, head_sha, deployed_sha, not identical,
    )
    return InvocationResult(
        outcome="merge-deploy-checked", result=_MERGE_DEPLOY_RESULT, context=ctx, outputs=outputs,
    )
