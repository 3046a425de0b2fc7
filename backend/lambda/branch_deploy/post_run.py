"""post_run.py — Completion step invoked by the deploy runner once the rollout ends."""
from __future__ import annotations

from typing import Optional

import locks
import messages
from config import logger
from deployment import set_status
from models import Deployment, LockKey, RunContext
from reporting import action_status, run_log_url

__all__ = ["run_post"]


def _deployment_from_context(ctx: RunContext) -> Deployment:
    return Deployment(
        id=int(ctx.deployment_id),
        ref=ctx.ref or "",
        sha=ctx.sha or "",
        environment=ctx.environment or "",
        noop=ctx.noop,
        status=ctx.deployment_status or "in_progress",
    )


def run_post(context: RunContext, status: str, gh, deployment_message: Optional[str] = None) -> str:
    """Finish the deployment started by the main run.

    Returns ``skipped`` when the main run did not start anything, otherwise
    ``success``, ``success - noop`` or ``failure``. A one-shot lock is
    released even when updating GitHub fails.
    """
    if context.bypass:
        logger.info("[INFO] post run %s bypassed", context.run_id)
        return "skipped"

    ok = status == "success"
    final_state = "success" if ok else "failure"
    log_url = run_log_url(context.owner, context.repo, context.run_id)
    try:
        if not context.noop and context.deployment_id is not None:
            deployment = set_status(
                gh,
                _deployment_from_context(context),
                final_state,
                log_url=log_url,
                environment_url=context.environment_url if ok else None,
            )
            context.deployment_status = deployment.status

        if context.issue_number is not None and context.comment_id is not None:
            action_status(
                gh,
                context.issue_number,
                context.comment_id,
                context.reaction_id,
                messages.deployment_results_message(
                    context.actor,
                    context.environment or "",
                    context.ref or "",
                    final_state,
                    context.noop,
                    log_url,
                    environment_url=context.environment_url,
                    deployment_message=deployment_message,
                ),
                success=ok,
            )
    finally:
        if context.lock_release_on_completion and context.environment:
            locks.release(gh, LockKey(context.environment))
            context.lock_release_on_completion = False

    if not ok:
        logger.info("[INFO] post run %s: deployment to %s failed", context.run_id, context.environment)
        return "failure"
    return "success - noop" if context.noop else "success"
