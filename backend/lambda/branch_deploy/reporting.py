"""reporting.py — Pull request feedback: reactions, status comments, permission checks, help."""
from __future__ import annotations

import textwrap
from typing import Optional, Sequence, Union

from config import GITHUB_SERVER_URL, RUN_LOG_URL_TEMPLATE, Inputs, logger
from github_client import GitHubApiError
from messages import deployment_error_message
from models import RunContext

__all__ = [
    "action_status",
    "report_error",
    "help_text",
    "permission_check",
    "react",
    "run_log_url",
]

_SUCCESS_REACTION = "rocket"
_ALT_SUCCESS_REACTION = "+1"
_FAILURE_REACTION = "-1"


def react(gh, comment_id: int, reaction: str) -> Optional[int]:
    """Acknowledge the trigger comment; returns the reaction id."""
    data = gh.add_reaction(comment_id, reaction)
    return data.get("id")


def action_status(
    gh,
    issue_number: int,
    comment_id: int,
    reaction_id: Optional[int],
    message: Optional[str],
    success: bool = False,
    alt_reaction: bool = False,
) -> None:
    """Post ``message`` and swap the initial reaction for the final one."""
    if not message:
        message = "Success" if success else "Unknown error, [check logs](#) for more details."
    gh.create_comment(issue_number, message)

    if reaction_id is not None:
        try:
            gh.delete_reaction(comment_id, reaction_id)
        except GitHubApiError as exc:
            if exc.status != 404:
                raise
            logger.info("[INFO] initial reaction %s already removed", reaction_id)

    if success:
        final = _ALT_SUCCESS_REACTION if alt_reaction else _SUCCESS_REACTION
    else:
        final = _FAILURE_REACTION
    gh.add_reaction(comment_id, final)


def run_log_url(owner: str, repo: str, run_id: Optional[str]) -> str:
    return RUN_LOG_URL_TEMPLATE.format(server_url=GITHUB_SERVER_URL, owner=owner, repo=repo, run_id=run_id or "")


def report_error(gh, ctx: RunContext, error: Exception) -> None:
    """Best-effort failure comment for a run that died unexpectedly. Never raises."""
    if ctx.issue_number is None or ctx.comment_id is None:
        return
    try:
        action_status(
            gh, ctx.issue_number, ctx.comment_id, ctx.reaction_id,
            deployment_error_message(error, run_log_url(ctx.owner, ctx.repo, ctx.run_id)),
        )
    except Exception as report_exc:
        logger.error("[ERROR] could not report failure on #%s: %s", ctx.issue_number, report_exc)


def permission_check(gh, actor: str, permissions: Sequence[str]) -> Union[bool, str]:
    """True when ``actor`` holds one of ``permissions``; otherwise the refusal message."""
    permission = gh.get_permission(actor)
    if permission in permissions:
        return True
    logger.info("[INFO] %s has '%s' permission; need one of %s", actor, permission, list(permissions))
    return (
        f"👋 @{actor}, that command requires the following permission(s): `{','.join(permissions)}`\n\n"
        f"Your current permissions: `{permission}`"
    )


def help_text(inputs: Inputs) -> str:
    envs = ", ".join(f"`{env}`" for env in inputs.environment_targets)
    order = " → ".join(inputs.enforced_deployment_order) or "not enforced"
    return textwrap.dedent(f"""\
        ## 📚 Branch Deployment Help

        ### 💻 Available Commands

        - `{inputs.help_trigger}` - Show this help message
        - `{inputs.trigger}` - Deploy this branch to the `{inputs.environment}` environment
        - `{inputs.trigger} <environment>` - Deploy this branch to a specific environment
        - `{inputs.trigger} {inputs.stable_branch}` - Roll back the `{inputs.environment}` environment to the `{inputs.stable_branch}` branch
        - `{inputs.noop_trigger}` - Deploy this branch in noop mode
        - `{inputs.lock_trigger}` - Obtain the deployment lock (sticky until `{inputs.unlock_trigger}`)
        - `{inputs.lock_trigger} --reason <text>` - Obtain the deployment lock with a reason
        - `{inputs.lock_trigger} {inputs.global_lock_flag}` - Lock every environment
        - `{inputs.lock_trigger} --info` / `{inputs.lock_info_alias}` - Show who holds the deployment lock
        - `{inputs.unlock_trigger}` - Release the deployment lock
        - `{inputs.unlock_trigger} {inputs.global_lock_flag}` - Release the global deployment lock
        - Parameters can be passed after `{inputs.param_separator}`, e.g. `{inputs.trigger} {inputs.param_separator} --cpu=2`

        ### 🌍 Environments

        - Targets: {envs}
        - Default: `{inputs.environment}`
        - Production: `{', '.join(inputs.production_environments) or 'none'}`
        - Enforced order: `{order}`

        ### ⚙️ Configuration

        - Sticky locks: `{inputs.sticky_locks}` (noop: `{inputs.sticky_locks_for_noop}`)
        - Update branch: `{inputs.update_branch}`
        - Required permissions: `{','.join(inputs.permissions)}`
        - SHA deployments: `{inputs.allow_sha_deployments}`
        - Forks allowed: `{inputs.allow_forks}`
        """)
