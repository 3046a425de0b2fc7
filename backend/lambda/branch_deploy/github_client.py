"""github_client.py — GitHub REST/GraphQL client for branch-deploy.

Authenticates either with a static token (``GITHUB_TOKEN`` or a token stored
in Secrets Manager under ``GITHUB_TOKEN_SECRET``) or as a GitHub App using the
RS256 JWT → installation access token flow.

All HTTP goes through ``GitHubClient.request`` which raises ``GitHubApiError``
for non-2xx responses. Idempotent methods retry on 5xx / connection errors
using ``GITHUB_RETRY_BACKOFF_SECONDS``; writes never retry.
"""
from __future__ import annotations

import base64
import json
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, List, Optional, Sequence, Tuple

import jwt

import config
from aws_clients import _get_secret
from config import logger
from serialization import _parse_ts

__all__ = [
    "GitHubApiError",
    "GitHubClient",
    "_generate_app_jwt",
    "_get_installation_token",
    "_resolve_token",
]

_API_VERSION = "2022-11-28"
_IDEMPOTENT_METHODS = {"GET", "HEAD", "DELETE"}


class GitHubApiError(ValueError):
    """Non-2xx response from the GitHub API."""

    def __init__(self, status: int, message: str, body: str = "") -> None:
        super().__init__(f"GitHub API error ({status}): {message}")
        self.status = status
        self.body = body


# ---------------------------------------------------------------------------
# GitHub App JWT and installation token
# ---------------------------------------------------------------------------

_installation_token: Optional[str] = None
_installation_token_expires_at: float = 0.0
_TOKEN_REFRESH_MARGIN: float = 300.0


def _generate_app_jwt() -> str:
    """Generate a short-lived RS256 JWT for the GitHub App.

    GitHub requires:
    - iat: issued at (max 60s in the past)
    - exp: expiration (max 10 minutes from iat)
    - iss: GitHub App ID
    """
    if not config.GITHUB_APP_ID:
        raise ValueError("GITHUB_APP_ID environment variable not set")

    now = int(time.time())
    payload = {
        "iat": now - 60,  # allow for clock skew
        "exp": now + (9 * 60),
        "iss": int(config.GITHUB_APP_ID),
    }
    private_key = _get_secret(config.GITHUB_PRIVATE_KEY_SECRET)
    return jwt.encode(payload, private_key, algorithm="RS256")


def _get_installation_token() -> str:
    """Exchange the App JWT for an installation access token (cached until near expiry)."""
    global _installation_token, _installation_token_expires_at
    now = time.time()
    if _installation_token and now < (_installation_token_expires_at - _TOKEN_REFRESH_MARGIN):
        return _installation_token

    if not config.GITHUB_INSTALLATION_ID:
        raise ValueError("GITHUB_INSTALLATION_ID environment variable not set")

    app_jwt = _generate_app_jwt()
    url = f"{config.GITHUB_API_BASE}/app/installations/{config.GITHUB_INSTALLATION_ID}/access_tokens"
    req = urllib.request.Request(
        url,
        method="POST",
        headers={
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {app_jwt}",
            "X-GitHub-Api-Version": _API_VERSION,
        },
    )

    try:
        with urllib.request.urlopen(req, timeout=config.GITHUB_HTTP_TIMEOUT_SECONDS) as resp:
            data = json.loads(resp.read())
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace")
        logger.error("GitHub installation token exchange failed: %s %s", exc.code, body)
        raise GitHubApiError(exc.code, "installation token exchange failed", body) from exc

    _installation_token = data["token"]
    # Tokens live one hour; fall back to that when expires_at is missing or unreadable.
    _installation_token_expires_at = now + 3600.0
    if data.get("expires_at"):
        try:
            _installation_token_expires_at = _parse_ts(data["expires_at"]).timestamp()
        except ValueError:
            logger.warning("[WARNING] unreadable installation token expires_at: %r", data["expires_at"])
    return _installation_token


def _resolve_token() -> str:
    if config.GITHUB_TOKEN:
        return config.GITHUB_TOKEN
    if config.GITHUB_TOKEN_SECRET:
        return _get_secret(config.GITHUB_TOKEN_SECRET)
    return _get_installation_token()


# ---------------------------------------------------------------------------
# GraphQL documents
# ---------------------------------------------------------------------------

_GQL_LATEST_DEPLOYMENT = """
query ($repo_owner: String!, $repo_name: String!, $environment: String!) {
  repository(owner: $repo_owner, name: $repo_name) {
    deployments(environments: [$environment], first: 1, orderBy: { field: CREATED_AT, direction: DESC }) {
      nodes {
        createdAt
        environment
        updatedAt
        id
        payload
        state
        ref { name }
        creator { login }
        commit { oid }
      }
    }
  }
}
"""

_GQL_REVIEW_STATUS = """
query ($repo_owner: String!, $repo_name: String!, $number: Int!) {
  repository(owner: $repo_owner, name: $repo_name) {
    pullRequest(number: $number) {
      reviewDecision
      mergeStateStatus
      commits(last: 1) {
        nodes {
          commit {
            oid
            statusCheckRollup { state }
          }
        }
      }
    }
  }
}
"""


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class GitHubClient:
    """Repository-scoped GitHub API client."""

    def __init__(
        self,
        owner: str,
        repo: str,
        token: Optional[str] = None,
        api_base: Optional[str] = None,
        graphql_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.owner = owner
        self.repo = repo
        self._token = token
        self.api_base = (api_base or config.GITHUB_API_BASE).rstrip("/")
        self.graphql_url = graphql_url or config.GITHUB_GRAPHQL_URL
        self.timeout = timeout or config.GITHUB_HTTP_TIMEOUT_SECONDS

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    def _token_value(self) -> str:
        if not self._token:
            self._token = _resolve_token()
        return self._token

    def _repo_url(self, suffix: str) -> str:
        return f"{self.api_base}/repos/{self.owner}/{self.repo}/{suffix.lstrip('/')}"

    # -- transport ---------------------------------------------------------

    def request(
        self,
        method: str,
        url: str,
        body: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Any]:
        """Perform one API call. Returns (status, parsed JSON or None)."""
        method = method.upper()
        data = json.dumps(body).encode("utf-8") if body is not None else None
        headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {self._token_value()}",
            "X-GitHub-Api-Version": _API_VERSION,
        }
        if data is not None:
            headers["Content-Type"] = "application/json"

        backoff: Sequence[float] = config.GITHUB_RETRY_BACKOFF_SECONDS if method in _IDEMPOTENT_METHODS else ()
        attempt = 0
        while True:
            req = urllib.request.Request(url, method=method, data=data, headers=headers)
            try:
                with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                    raw = resp.read()
                    parsed = json.loads(raw) if raw else None
                    return resp.status, parsed
            except urllib.error.HTTPError as exc:
                body_text = exc.read().decode("utf-8", errors="replace")
                if exc.code >= 500 and attempt < len(backoff):
                    logger.warning(
                        "[WARNING] GitHub %s %s returned %s; retrying in %ss",
                        method, url, exc.code, backoff[attempt],
                    )
                    time.sleep(backoff[attempt])
                    attempt += 1
                    continue
                message = body_text
                try:
                    message = json.loads(body_text).get("message", body_text)
                except (json.JSONDecodeError, AttributeError):
                    pass
                raise GitHubApiError(exc.code, message, body_text) from exc
            except urllib.error.URLError as exc:
                if attempt < len(backoff):
                    logger.warning(
                        "[WARNING] GitHub %s %s unreachable (%s); retrying in %ss",
                        method, url, exc.reason, backoff[attempt],
                    )
                    time.sleep(backoff[attempt])
                    attempt += 1
                    continue
                raise

    def graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables
        _status, data = self.request("POST", self.graphql_url, payload)
        data = data or {}
        if data.get("errors"):
            err_msgs = "; ".join(e.get("message", "") for e in data["errors"])
            raise GitHubApiError(200, f"GraphQL errors: {err_msgs}")
        return data.get("data") or {}

    # -- repository reads --------------------------------------------------

    def get_repo(self) -> Dict[str, Any]:
        return self.request("GET", self._repo_url(""))[1]

    def get_pull(self, number: int) -> Dict[str, Any]:
        return self.request("GET", self._repo_url(f"pulls/{number}"))[1]

    def get_branch(self, name: str) -> Dict[str, Any]:
        return self.request("GET", self._repo_url(f"branches/{urllib.parse.quote(name, safe='')}"))[1]

    def get_commit(self, ref: str) -> Dict[str, Any]:
        return self.request("GET", self._repo_url(f"commits/{urllib.parse.quote(ref, safe='')}"))[1]

    def get_permission(self, username: str) -> str:
        data = self.request("GET", self._repo_url(f"collaborators/{username}/permission"))[1]
        return str((data or {}).get("permission") or "none")

    def get_file(self, path: str, ref: str) -> Optional[str]:
        """Decoded text of ``path`` at ``ref``, or None when either is missing."""
        url = self._repo_url(f"contents/{path}?ref={urllib.parse.quote(ref, safe='')}")
        try:
            data = self.request("GET", url)[1] or {}
        except GitHubApiError as exc:
            if exc.status == 404:
                return None
            raise
        return base64.b64decode(data.get("content") or "").decode("utf-8")

    def pull_review_status(self, number: int) -> Dict[str, Any]:
        data = self.graphql(
            _GQL_REVIEW_STATUS,
            {"repo_owner": self.owner, "repo_name": self.repo, "number": int(number)},
        )
        pull = (data.get("repository") or {}).get("pullRequest") or {}
        nodes = (pull.get("commits") or {}).get("nodes") or []
        rollup = None
        if nodes:
            rollup = ((nodes[0].get("commit") or {}).get("statusCheckRollup") or {}).get("state")
        return {
            "review_decision": pull.get("reviewDecision"),
            "merge_state_status": pull.get("mergeStateStatus"),
            "commit_status": rollup,
        }

    # -- git data ----------------------------------------------------------

    def create_blob(self, content: str) -> str:
        data = self.request("POST", self._repo_url("git/blobs"), {"content": content, "encoding": "utf-8"})[1]
        return data["sha"]

    def create_tree(self, entries: List[Dict[str, Any]]) -> str:
        data = self.request("POST", self._repo_url("git/trees"), {"tree": entries})[1]
        return data["sha"]

    def create_commit(self, message: str, tree_sha: str, parents: Optional[List[str]] = None) -> str:
        data = self.request(
            "POST",
            self._repo_url("git/commits"),
            {"message": message, "tree": tree_sha, "parents": list(parents or [])},
        )[1]
        return data["sha"]

    def create_ref(self, branch: str, sha: str) -> Dict[str, Any]:
        """Create ``refs/heads/<branch>``; GitHub answers 422 when it already exists."""
        return self.request("POST", self._repo_url("git/refs"), {"ref": f"refs/heads/{branch}", "sha": sha})[1]

    def delete_ref(self, branch: str) -> None:
        self.request("DELETE", self._repo_url(f"git/refs/heads/{branch}"))

    def update_pull_branch(self, number: int) -> Dict[str, Any]:
        return self.request("PUT", self._repo_url(f"pulls/{number}/update-branch"), {})[1] or {}

    # -- deployments -------------------------------------------------------

    def create_deployment(self, payload: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
        status, data = self.request("POST", self._repo_url("deployments"), payload)
        return status, data or {}

    def create_deployment_status(self, deployment_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.request("POST", self._repo_url(f"deployments/{deployment_id}/statuses"), payload)[1] or {}

    def latest_deployment(self, environment: str) -> Optional[Dict[str, Any]]:
        data = self.graphql(
            _GQL_LATEST_DEPLOYMENT,
            {"repo_owner": self.owner, "repo_name": self.repo, "environment": environment},
        )
        nodes = (((data.get("repository") or {}).get("deployments") or {}).get("nodes")) or []
        return nodes[0] if nodes else None

    # -- issues / comments -------------------------------------------------

    def create_comment(self, issue_number: int, body: str) -> Dict[str, Any]:
        return self.request("POST", self._repo_url(f"issues/{issue_number}/comments"), {"body": body})[1] or {}

    def add_reaction(self, comment_id: int, content: str) -> Dict[str, Any]:
        return self.request(
            "POST", self._repo_url(f"issues/comments/{comment_id}/reactions"), {"content": content}
        )[1] or {}

    def delete_reaction(self, comment_id: int, reaction_id: int) -> None:
        self.request("DELETE", self._repo_url(f"issues/comments/{comment_id}/reactions/{reaction_id}"))
