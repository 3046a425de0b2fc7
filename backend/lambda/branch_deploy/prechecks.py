"""prechecks.py — Decide whether a requested deploy may proceed and what exactly to deploy.

Nothing in here raises for an expected refusal: every rule failure comes
back as ``PrecheckResult(status=False, message=...)`` with a message meant
for the pull request thread. Only unexpected API failures propagate.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from config import Inputs, logger
from github_client import GitHubApiError
from models import EnvironmentTarget, PrecheckResult
from serialization import _parse_ts

__all__ = [
    "commit_safety_check",
    "prechecks",
]

_REVIEW_OK = {"APPROVED", None, "skip_reviews"}
_CI_OK = {"SUCCESS", None, "skip_ci"}


def _fail(message: str) -> PrecheckResult:
    logger.info("[INFO] precheck failed: %s", message.splitlines()[0] if message else "")
    return PrecheckResult(status=False, message=message)


def _is_fork(pr: Dict[str, Any]) -> bool:
    head_repo = (pr.get("head") or {}).get("repo") or {}
    base_repo = (pr.get("base") or {}).get("repo") or {}
    if not head_repo:
        # head repository deleted: treat as a fork, nothing to trust
        return True
    return head_repo.get("full_name") != base_repo.get("full_name")


def _stable_branch_precheck(gh, inputs: Inputs, noop: bool) -> PrecheckResult:
    try:
        branch = gh.get_branch(inputs.stable_branch)
    except GitHubApiError as exc:
        if exc.status == 404:
            return _fail(f"### ⚠️ Cannot proceed with deployment\n\nThe stable branch `{inputs.stable_branch}` does not exist.")
        raise
    sha = ((branch or {}).get("commit") or {}).get("sha")
    return PrecheckResult(
        status=True,
        message=f"✅ deploying the stable branch `{inputs.stable_branch}`",
        ref=inputs.stable_branch,
        sha=sha,
        noop_mode=noop,
    )


def prechecks(
    gh,
    issue_number: int,
    actor: str,
    target: EnvironmentTarget,
    noop: bool,
    inputs: Inputs,
) -> PrecheckResult:
    """Validate the pull request and resolve the concrete ref + sha to deploy."""
    if target.stable_branch_used:
        # rollbacks to the stable branch skip PR state and CI/review gating
        return _stable_branch_precheck(gh, inputs, noop)

    pr = gh.get_pull(issue_number)
    if pr.get("merged") or pr.get("state") == "closed":
        state = "merged" if pr.get("merged") else "closed"
        return _fail(
            f"### ⚠️ Cannot proceed with deployment\n\nThis pull request is **{state}**. "
            f"Deployments can only be started from open pull requests (or from the stable branch `{inputs.stable_branch}`)."
        )

    head = pr.get("head") or {}
    is_fork = _is_fork(pr)
    if is_fork and not inputs.allow_forks:
        return _fail("### ⚠️ Cannot proceed with deployment\n\nDeployments from forks are not allowed in this repository.")

    if target.sha:
        try:
            commit = gh.get_commit(target.sha)
        except GitHubApiError as exc:
            if exc.status in (404, 422):
                return _fail(f"### ⚠️ Cannot proceed with deployment\n\nThe commit `{target.sha}` does not exist in this repository.")
            raise
        sha = commit.get("sha") or target.sha
        ref = sha
    else:
        sha = head.get("sha")
        # fork branches do not exist in the base repository; deploy the exact commit
        ref = sha if is_fork else head.get("ref")

    if not ref or not sha:
        return _fail("### ⚠️ Cannot proceed with deployment\n\nThe pull request head could not be resolved to a commit.")

    if not target.sha and pr.get("mergeable_state") == "behind":
        if inputs.update_branch == "warn":
            return _fail(
                "### ⚠️ Cannot proceed with deployment\n\n"
                "Your branch is behind the base branch and will need to be updated before deployments can continue."
            )
        if inputs.update_branch == "force":
            gh.update_pull_branch(issue_number)
            return _fail(
                "### ⚠️ Cannot proceed with deployment\n\n"
                "Your branch was behind the base branch and an update has been requested. "
                "Please wait for the update (and CI) to finish, then try again."
            )

    status = gh.pull_review_status(issue_number)
    review_decision = status.get("review_decision")
    commit_status = status.get("commit_status")
    if target.environment in inputs.skip_reviews:
        review_decision = "skip_reviews"
    if target.environment in inputs.skip_ci:
        commit_status = "skip_ci"
    is_admin = actor in inputs.admins

    ci_ok = commit_status in _CI_OK
    review_ok = review_decision in _REVIEW_OK or is_admin
    noop_before_review = noop and review_decision == "REVIEW_REQUIRED"

    if not (ci_ok and (review_ok or noop_before_review)):
        return _fail(
            "### ⚠️ Cannot proceed with deployment\n\n"
            f"- reviewDecision: `{review_decision}`\n"
            f"- commitStatus: `{commit_status}`\n\n"
            "> Your pull request needs passing CI and the required approvals before it can be deployed"
        )

    return PrecheckResult(
        status=True,
        message=f"✅ PR checks passed (reviewDecision: `{review_decision}`, commitStatus: `{commit_status}`)",
        ref=ref,
        sha=sha,
        noop_mode=noop,
        is_fork=is_fork,
    )


def commit_safety_check(commit: Dict[str, Any], comment_created_at: Optional[str], inputs: Inputs) -> PrecheckResult:
    """Refuse commits authored after the trigger comment, and unsigned commits when verification is on."""
    details = commit.get("commit") or {}
    authored = (details.get("author") or {}).get("date") or (details.get("committer") or {}).get("date")
    if comment_created_at and authored and _parse_ts(authored) > _parse_ts(comment_created_at):
        return PrecheckResult(
            status=False,
            message=(
                "### ⚠️ Cannot proceed with deployment\n\n"
                "The latest commit is not safe for deployment. It was authored after the trigger comment was created."
            ),
        )
    if inputs.commit_verification and not (details.get("verification") or {}).get("verified"):
        return PrecheckResult(
            status=False,
            message=(
                "### ⚠️ Cannot proceed with deployment\n\n"
                "The latest commit is not signed with a verified signature and commit verification is enforced."
            ),
        )
    return PrecheckResult(status=True, message="✅ commit safety checks passed", sha=commit.get("sha"))
