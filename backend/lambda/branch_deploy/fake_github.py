"""fake_github.py — In-memory stand-in for GitHubClient used by the tests.

Git refs, blobs, trees and commits are stored the way GitHub stores them so
lock payloads round-trip through ``get_file``. ``create_ref`` is atomic under
a ``threading.Lock`` and answers 422 like GitHub when the ref already exists,
which makes lock exclusivity testable with real threads.
"""
from __future__ import annotations

import hashlib
import itertools
import threading
from typing import Any, Dict, List, Optional, Tuple

from github_client import GitHubApiError

__all__ = ["FakeGitHub"]

_GRAPHQL_STATE = {
    "in_progress": "IN_PROGRESS",
    "success": "ACTIVE",
    "failure": "FAILURE",
    "inactive": "INACTIVE",
}


def _sha(*parts: str) -> str:
    return hashlib.sha1("\0".join(parts).encode("utf-8")).hexdigest()


class FakeGitHub:
    def __init__(self, owner: str = "octo-org", repo: str = "octo-repo") -> None:
        self.owner = owner
        self.repo = repo
        self._mutex = threading.Lock()
        self._ids = itertools.count(1000)

        self.refs: Dict[str, str] = {}
        self.blobs: Dict[str, str] = {}
        self.trees: Dict[str, List[Dict[str, Any]]] = {}
        self.git_commits: Dict[str, Dict[str, Any]] = {}

        self.pulls: Dict[int, Dict[str, Any]] = {}
        self.branches: Dict[str, str] = {"main": "f" * 40}
        self.commits: Dict[str, Dict[str, Any]] = {}
        self.permissions: Dict[str, str] = {}
        self.review_status: Dict[int, Dict[str, Any]] = {}
        self.default_branch = "main"

        self.deployments: List[Dict[str, Any]] = []
        self.deployment_statuses: List[Tuple[int, Dict[str, Any]]] = []
        self.latest: Dict[str, Dict[str, Any]] = {}
        self.merge_required_message: Optional[str] = None

        self.comments: List[Tuple[int, str]] = []
        self.reactions: Dict[int, Tuple[int, str]] = {}
        self.deleted_reactions: List[int] = []
        self.branch_updates: List[int] = []

        # test hooks
        self.fail_delete_ref: Optional[GitHubApiError] = None
        self.fail_deployment_status: Optional[Exception] = None
        self.before_create_ref = None

        self.add_commit(self.branches["main"])

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    def _next_id(self) -> int:
        with self._mutex:
            return next(self._ids)

    # -- fixtures ----------------------------------------------------------

    def add_pull(
        self,
        number: int,
        head_ref: str = "feature",
        head_sha: str = "a" * 40,
        state: str = "open",
        merged: bool = False,
        fork: bool = False,
        mergeable_state: str = "clean",
        authored_at: str = "2020-01-01T00:00:00Z",
    ) -> Dict[str, Any]:
        base_repo = {"full_name": self.full_name}
        head_repo = {"full_name": f"fork-owner/{self.repo}" if fork else self.full_name}
        pr = {
            "number": number,
            "state": state,
            "merged": merged,
            "mergeable_state": mergeable_state,
            "head": {"ref": head_ref, "sha": head_sha, "repo": head_repo},
            "base": {"ref": self.default_branch, "repo": base_repo},
        }
        self.pulls[number] = pr
        self.add_commit(head_sha, authored_at=authored_at)
        self.review_status.setdefault(
            number, {"review_decision": "APPROVED", "merge_state_status": "CLEAN", "commit_status": "SUCCESS"}
        )
        return pr

    def add_commit(self, sha: str, authored_at: str = "2020-01-01T00:00:00Z", verified: bool = True) -> None:
        self.commits[sha] = {
            "sha": sha,
            "commit": {
                "author": {"date": authored_at},
                "committer": {"date": authored_at},
                "verification": {"verified": verified},
            },
        }

    def set_latest_deployment(self, environment: str, state: str, sha: str) -> None:
        self.latest[environment] = {"state": state, "commit": {"oid": sha}}

    def comment_bodies(self) -> List[str]:
        return [body for _issue, body in self.comments]

    def reaction_contents(self, comment_id: int) -> List[str]:
        return [content for cid, content in self.reactions.values() if cid == comment_id]

    # -- repository reads --------------------------------------------------

    def get_repo(self) -> Dict[str, Any]:
        return {"full_name": self.full_name, "default_branch": self.default_branch}

    def get_pull(self, number: int) -> Dict[str, Any]:
        if number not in self.pulls:
            raise GitHubApiError(404, "Not Found")
        return self.pulls[number]

    def get_branch(self, name: str) -> Dict[str, Any]:
        if name not in self.branches:
            raise GitHubApiError(404, "Branch not found")
        return {"name": name, "commit": {"sha": self.branches[name]}}

    def get_commit(self, ref: str) -> Dict[str, Any]:
        if ref in self.commits:
            return self.commits[ref]
        if ref in self.branches and self.branches[ref] in self.commits:
            return self.commits[self.branches[ref]]
        raise GitHubApiError(422, f"No commit found for SHA: {ref}")

    def get_permission(self, username: str) -> str:
        return self.permissions.get(username, "write")

    def get_file(self, path: str, ref: str) -> Optional[str]:
        commit_sha = self.refs.get(ref)
        if commit_sha is None:
            return None
        tree = self.trees[self.git_commits[commit_sha]["tree"]]
        for entry in tree:
            if entry["path"] == path:
                return self.blobs[entry["sha"]]
        return None

    def pull_review_status(self, number: int) -> Dict[str, Any]:
        return dict(self.review_status.get(number, {}))

    # -- git data ----------------------------------------------------------

    def create_blob(self, content: str) -> str:
        sha = _sha("blob", content, str(self._next_id()))
        self.blobs[sha] = content
        return sha

    def create_tree(self, entries: List[Dict[str, Any]]) -> str:
        sha = _sha("tree", repr(entries), str(self._next_id()))
        self.trees[sha] = list(entries)
        return sha

    def create_commit(self, message: str, tree_sha: str, parents: Optional[List[str]] = None) -> str:
        sha = _sha("commit", message, tree_sha, str(self._next_id()))
        self.git_commits[sha] = {"message": message, "tree": tree_sha, "parents": list(parents or [])}
        return sha

    def create_ref(self, branch: str, sha: str) -> Dict[str, Any]:
        if self.before_create_ref is not None:
            self.before_create_ref(branch)
        with self._mutex:
            if branch in self.refs:
                raise GitHubApiError(422, "Reference already exists")
            self.refs[branch] = sha
        return {"ref": f"refs/heads/{branch}", "object": {"sha": sha}}

    def delete_ref(self, branch: str) -> None:
        if self.fail_delete_ref is not None:
            raise self.fail_delete_ref
        with self._mutex:
            if branch not in self.refs:
                raise GitHubApiError(422, "Reference does not exist")
            del self.refs[branch]

    def update_pull_branch(self, number: int) -> Dict[str, Any]:
        self.branch_updates.append(number)
        return {"message": "Updating pull request branch."}

    # -- deployments -------------------------------------------------------

    def create_deployment(self, payload: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
        if self.merge_required_message:
            return 202, {"message": self.merge_required_message}
        deployment = {"id": self._next_id(), **payload}
        self.deployments.append(deployment)
        return 201, deployment

    def create_deployment_status(self, deployment_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.fail_deployment_status is not None:
            raise self.fail_deployment_status
        self.deployment_statuses.append((deployment_id, dict(payload)))
        for deployment in self.deployments:
            if deployment["id"] == deployment_id:
                self.latest[deployment["environment"]] = {
                    "state": _GRAPHQL_STATE.get(payload["state"], payload["state"].upper()),
                    "commit": {"oid": deployment["payload"]["sha"]},
                }
        return {"id": self._next_id(), **payload}

    def latest_deployment(self, environment: str) -> Optional[Dict[str, Any]]:
        return self.latest.get(environment)

    # -- issues / comments -------------------------------------------------

    def create_comment(self, issue_number: int, body: str) -> Dict[str, Any]:
        self.comments.append((issue_number, body))
        return {"id": self._next_id(), "body": body}

    def add_reaction(self, comment_id: int, content: str) -> Dict[str, Any]:
        reaction_id = self._next_id()
        self.reactions[reaction_id] = (comment_id, content)
        return {"id": reaction_id, "content": content}

    def delete_reaction(self, comment_id: int, reaction_id: int) -> None:
        if reaction_id not in self.reactions:
            raise GitHubApiError(404, "Not Found")
        del self.reactions[reaction_id]
        self.deleted_reactions.append(reaction_id)
