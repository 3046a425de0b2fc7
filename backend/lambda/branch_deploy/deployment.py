"""deployment.py — GitHub deployment lifecycle: create, status transitions, activity lookups."""
from __future__ import annotations

from typing import Any, Dict, Optional, Union

from config import _DEPLOYMENT_TRANSITIONS, Inputs, logger
from models import Deployment, MergeRequired
from serialization import _now_z

__all__ = [
    "create_deployment",
    "is_active_at",
    "latest_deployment",
    "set_status",
]


def _auto_merge(inputs: Inputs, sha_deploy: bool) -> bool:
    # the base branch cannot be merged reliably into a bare sha
    if sha_deploy:
        return False
    return inputs.update_branch != "disabled"


def create_deployment(
    gh,
    environment: str,
    ref: str,
    sha: str,
    inputs: Inputs,
    params: Optional[str] = None,
    parsed_params: Optional[Dict[str, Any]] = None,
    sha_deploy: bool = False,
) -> Union[Deployment, MergeRequired]:
    """Request a deployment object.

    GitHub answers 202 with an ``Auto-merged ...`` message and no id when it
    had to merge the base branch into ``ref`` first; that comes back as
    ``MergeRequired`` for the caller to turn into a safe exit.
    """
    auto_merge = _auto_merge(inputs, sha_deploy)
    required_contexts = list(inputs.required_contexts)
    is_production = environment in inputs.production_environments
    status, data = gh.create_deployment({
        "ref": ref,
        "auto_merge": auto_merge,
        "required_contexts": required_contexts,
        "environment": environment,
        "production_environment": is_production,
        "payload": {
            "type": "branch-deploy",
            "sha": sha,
            "params": params,
            "parsed_params": parsed_params or {},
        },
    })

    if data.get("id") is None:
        message = str(data.get("message") or "")
        if "auto-merged" in message.lower():
            logger.warning("[WARNING] deployment for %s needs a merge first: %s", ref, message)
            return MergeRequired(message)
        raise ValueError(f"Deployment creation returned no id (status {status}): {message}")

    logger.info("[INFO] deployment %s created env=%s ref=%s", data["id"], environment, ref)
    return Deployment(
        id=int(data["id"]),
        ref=ref,
        sha=sha,
        environment=environment,
        auto_merge=auto_merge,
        required_contexts=required_contexts,
        is_production=is_production,
        status="queued",
        history=[{"timestamp": _now_z(), "from": None, "to": "queued"}],
    )


def set_status(
    gh,
    deployment: Deployment,
    state: str,
    log_url: Optional[str] = None,
    environment_url: Optional[str] = None,
) -> Deployment:
    """Move ``deployment`` forward to ``state`` and record it on GitHub."""
    prev = deployment.status
    if prev not in _DEPLOYMENT_TRANSITIONS:
        raise ValueError(f"Unknown current deployment state '{prev}'")
    if state not in _DEPLOYMENT_TRANSITIONS[prev]:
        raise ValueError(f"Invalid deployment transition {prev} -> {state}")

    payload: Dict[str, Any] = {
        "state": state,
        "environment": deployment.environment,
        "log_url": log_url,
    }
    if environment_url:
        payload["environment_url"] = environment_url
    gh.create_deployment_status(deployment.id, payload)

    deployment.status = state
    deployment.history.append({"timestamp": _now_z(), "from": prev, "to": state, "log_url": log_url})
    logger.info("[INFO] deployment %s %s -> %s", deployment.id, prev, state)
    return deployment


def latest_deployment(gh, environment: str) -> Optional[Dict[str, Any]]:
    """Newest deployment node for ``environment`` (GraphQL shape) or None."""
    return gh.latest_deployment(environment)


def is_active_at(gh, environment: str, sha: str) -> bool:
    """True when the newest deployment of ``environment`` is ACTIVE at exactly ``sha``."""
    node = latest_deployment(gh, environment)
    if node is None:
        return False
    commit = (node.get("commit") or {}).get("oid")
    return node.get("state") == "ACTIVE" and commit == sha
