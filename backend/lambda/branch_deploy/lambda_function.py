"""branch_deploy/lambda_function.py — IssueOps branch-deploy coordinator

Receives GitHub webhooks for pull request comments (``.deploy``, ``.noop``,
``.lock``, ``.unlock``, ``.help``, ``.wcid``) and runs the branch-deploy
pipeline against the repository through a GitHub App. The deploy runner is
notified over EventBridge and calls back with a direct invoke once the
rollout finishes.

Routes (via API Gateway proxy):
    POST    /.../webhook   — GitHub webhook (issue_comment, pull_request)
    OPTIONS /.../*         — CORS preflight

Direct invoke:
    {"phase": "post", "status": "success|failure", "context": {...},
     "deployment_message": "..."}   — post-run step

Auth:
    /webhook: GitHub HMAC-SHA256 signature (X-Hub-Signature-256).

Environment variables:
    GITHUB_APP_ID               GitHub App numeric ID
    GITHUB_INSTALLATION_ID      Installation ID for the repository owner
    GITHUB_PRIVATE_KEY_SECRET   Secrets Manager secret name (default: devops/github-app/private-key)
    GITHUB_WEBHOOK_SECRET       Secrets Manager secret name for webhook HMAC key
    GITHUB_TOKEN                static token (skips the GitHub App flow)
    DEPLOY_EVENT_BUS            EventBridge bus for "Deployment Started" events
    SECRETS_REGION              default: AWS_REGION or us-west-2
    TRIGGER, NOOP_TRIGGER, ...  command inputs, see config.load_inputs
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from typing import Any, Dict, Optional, Tuple

from aws_clients import _get_secret
from config import CORS_ORIGIN, GITHUB_WEBHOOK_SECRET_NAME, load_inputs, logger
from github_client import GitHubClient
from handlers import run_main, run_merge_deploy, run_unlock_on_merge
from models import RunContext
from post_run import run_post
from reporting import report_error

__all__ = ["lambda_handler"]


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------


def _cors_headers() -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": CORS_ORIGIN,
        "Access-Control-Allow-Methods": "POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, X-GitHub-Event, X-Hub-Signature-256",
    }


def _response(status_code: int, body: Any) -> Dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {**_cors_headers(), "Content-Type": "application/json"},
        "body": json.dumps(body, default=str),
    }


def _error(status_code: int, message: str, **extra: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"success": False, "error": message}
    if extra:
        payload.update(extra)
    return _response(status_code, payload)


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------


def _raw_body(event: Dict) -> str:
    raw = event.get("body") or ""
    if event.get("isBase64Encoded"):
        raw = base64.b64decode(raw).decode("utf-8")
    return raw


def _parse_body(event: Dict) -> Optional[Dict]:
    try:
        parsed = json.loads(_raw_body(event) or "{}")
    except (json.JSONDecodeError, TypeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _path_method(event: Dict) -> Tuple[str, str]:
    rc = event.get("requestContext") or {}
    http = rc.get("http") or {}
    method = (http.get("method") or event.get("httpMethod") or "GET").upper()
    path = http.get("path") or event.get("rawPath") or event.get("path") or "/"
    return method, path


def _header(event: Dict, name: str) -> str:
    headers = event.get("headers") or {}
    for key, value in headers.items():
        if key.lower() == name.lower():
            return value or ""
    return ""


def _verify_webhook_signature(event: Dict) -> bool:
    """Verify GitHub webhook HMAC-SHA256 signature."""
    signature_header = _header(event, "X-Hub-Signature-256")
    if not signature_header.startswith("sha256="):
        return False

    secret = _get_secret(GITHUB_WEBHOOK_SECRET_NAME)
    expected = hmac.new(
        secret.encode("utf-8"),
        _raw_body(event).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()

    received = signature_header[len("sha256="):]
    return hmac.compare_digest(expected, received)


def _github_client(owner: str, repo: str) -> GitHubClient:
    return GitHubClient(owner, repo)


def _repo_coordinates(payload: Dict[str, Any]) -> Tuple[str, str]:
    repository = payload.get("repository") or {}
    owner = (repository.get("owner") or {}).get("login") or ""
    return owner, repository.get("name") or ""


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------


def _handle_webhook(event: Dict, run_id: Optional[str]) -> Dict:
    if not _verify_webhook_signature(event):
        logger.warning("[WARNING] webhook signature verification failed")
        return _error(401, "Invalid webhook signature.")

    payload = _parse_body(event)
    if not payload:
        return _error(400, "Invalid JSON payload.")

    gh_event = _header(event, "X-GitHub-Event")
    action = payload.get("action", "")
    logger.info(
        "[INFO] webhook received: event=%s action=%s delivery=%s",
        gh_event, action, _header(event, "X-GitHub-Delivery") or "unknown",
    )

    owner, repo = _repo_coordinates(payload)
    if not owner or not repo:
        return _error(400, "Payload is missing repository owner/name.")

    try:
        inputs = load_inputs()
    except ValueError as exc:
        logger.error("[ERROR] invalid branch-deploy configuration: %s", exc)
        return _error(500, f"Invalid configuration: {exc}")

    if gh_event == "issue_comment" and action == "created":
        result = run_main(payload, inputs, _github_client(owner, repo), run_id)
        return _response(200, {"processed": True, **result.to_dict()})

    pr = payload.get("pull_request") or {}
    if gh_event == "pull_request" and action == "closed" and pr.get("merged"):
        if inputs.unlock_on_merge_mode:
            result = run_unlock_on_merge(payload, inputs, _github_client(owner, repo), run_id)
            return _response(200, {"processed": True, **result.to_dict()})
        if inputs.merge_deploy_mode:
            result = run_merge_deploy(payload, inputs, _github_client(owner, repo), run_id)
            return _response(200, {"processed": True, **result.to_dict()})

    return _response(200, {"processed": False, "reason": "event_not_handled"})


# ---------------------------------------------------------------------------
# Post-run (direct invoke)
# ---------------------------------------------------------------------------


def _handle_post(event: Dict) -> Dict:
    try:
        ctx = RunContext.from_dict(event.get("context") or {})
    except (TypeError, ValueError) as exc:
        logger.error("[ERROR] invalid post-run context: %s", exc)
        return {"success": False, "error": f"Invalid run context: {exc}"}

    gh = _github_client(ctx.owner, ctx.repo)
    try:
        result = run_post(
            ctx,
            str(event.get("status") or "failure"),
            gh,
            deployment_message=event.get("deployment_message"),
        )
    except Exception as exc:
        logger.exception("[ERROR] post run %s failed: %s", ctx.run_id, exc)
        report_error(gh, ctx, exc)
        return {"success": False, "result": "failure", "error": str(exc), "context": ctx.to_dict()}
    return {"success": True, "result": result, "context": ctx.to_dict()}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict, context: Any) -> Dict:
    if event.get("phase") == "post":
        return _handle_post(event)

    method, path = _path_method(event)

    # CORS preflight
    if method == "OPTIONS":
        return {"statusCode": 204, "headers": _cors_headers(), "body": ""}

    if method == "POST" and path.rstrip("/").endswith("/webhook"):
        return _handle_webhook(event, getattr(context, "aws_request_id", None))

    return _error(404, f"Route not found: {method} {path}")
