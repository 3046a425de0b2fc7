"""test_handlers.py — Command dispatcher end to end against the in-memory GitHub.

Run: python3 -m pytest test_handlers.py -v
"""

from __future__ import annotations

import json
import os
import sys
import unittest
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.dirname(__file__))

import handlers  # noqa: E402
import locks  # noqa: E402
from config import Inputs  # noqa: E402
from fake_github import FakeGitHub  # noqa: E402
from github_client import GitHubApiError  # noqa: E402
from models import LockKey  # noqa: E402
from post_run import run_post  # noqa: E402

HEAD = "a" * 40
COMMENT_ID = 555


def _comment_event(body: str, actor: str = "alice", number: int = 7, created_at: str = "2024-01-01T00:05:00Z") -> dict:
    return {
        "action": "created",
        "issue": {"number": number, "pull_request": {"url": f"https://api.github.com/pulls/{number}"}},
        "comment": {
            "id": COMMENT_ID,
            "body": body,
            "user": {"login": actor},
            "created_at": created_at,
            "html_url": f"https://github.com/octo-org/octo-repo/pull/{number}#issuecomment-{COMMENT_ID}",
        },
        "repository": {"name": "octo-repo", "owner": {"login": "octo-org"}},
    }


def _merged_event(head_ref: str = "feature") -> dict:
    return {
        "action": "closed",
        "pull_request": {"number": 7, "merged": True, "head": {"ref": head_ref}},
        "repository": {"name": "octo-repo", "owner": {"login": "octo-org"}, "default_branch": "main"},
    }


class DispatcherTestCase(unittest.TestCase):
    def setUp(self):
        self.gh = FakeGitHub()
        self.gh.add_pull(7, head_ref="feature", head_sha=HEAD)
        self.inputs = Inputs()

    def run_comment(self, body, actor="alice", inputs=None, **kwargs):
        return handlers.run_main(_comment_event(body, actor=actor, **kwargs), inputs or self.inputs, self.gh, "run-1")

    def hold_lock(self, environment, actor, sticky=True, branch="other"):
        key = LockKey(environment)
        locks.acquire(self.gh, key, locks.build_lock(key, actor, sticky, self.inputs, branch=branch))

    def last_comment(self) -> str:
        return self.gh.comment_bodies()[-1]


class DeployTests(DispatcherTestCase):
    def test_deploy_started(self):
        result = self.run_comment(".deploy")
        self.assertEqual(result.outcome, "deploy-started")
        self.assertEqual(result.result, "success")
        ctx = result.context
        self.assertFalse(ctx.bypass)
        self.assertEqual((ctx.environment, ctx.ref, ctx.sha), ("production", "feature", HEAD))
        self.assertTrue(ctx.lock_release_on_completion)
        self.assertEqual(ctx.deployment_status, "in_progress")
        self.assertEqual(result.outputs["deployment_id"], ctx.deployment_id)
        self.assertIn("production-branch-deploy-lock", self.gh.refs)
        self.assertIn("### Deployment Triggered 🚀", self.gh.comment_bodies()[0])
        self.assertEqual(self.gh.deployment_statuses[0][1]["state"], "in_progress")
        self.assertIn("/actions/runs/run-1", self.gh.deployment_statuses[0][1]["log_url"])

    def test_outputs(self):
        result = self.run_comment(".deploy staging | --cpu=2")
        outputs = result.outputs
        self.assertTrue(outputs["triggered"])
        self.assertEqual(outputs["type"], "deploy")
        self.assertEqual(outputs["environment"], "staging")
        self.assertEqual(outputs["params"], "--cpu=2")
        self.assertEqual(outputs["parsed_params"]["cpu"], 2)
        self.assertEqual(outputs["comment_id"], COMMENT_ID)
        self.assertEqual(outputs["actor_handle"], "alice")
        self.assertIsNotNone(outputs["initial_comment_id"])
        json.dumps(result.to_dict())

    def test_noop_does_not_create_deployment(self):
        result = self.run_comment(".noop staging")
        self.assertEqual(result.outcome, "noop-started")
        self.assertEqual(result.result, "success - noop")
        self.assertTrue(result.context.noop)
        self.assertFalse(result.context.bypass)
        self.assertEqual(self.gh.deployments, [])

    def test_noop_review_required_still_runs(self):
        self.gh.review_status[7]["review_decision"] = "REVIEW_REQUIRED"
        self.assertEqual(self.run_comment(".noop").outcome, "noop-started")
        self.assertEqual(self.run_comment(".deploy").outcome, "precheck-failed")

    def test_sticky_lock_is_kept(self):
        result = self.run_comment(".deploy", inputs=Inputs(sticky_locks=True))
        self.assertTrue(result.context.sticky)
        self.assertFalse(result.context.lock_release_on_completion)
        self.assertTrue(locks.inspect(self.gh, LockKey("production")).sticky)

    def test_noop_uses_noop_sticky_setting(self):
        result = self.run_comment(".noop", inputs=Inputs(sticky_locks=True, sticky_locks_for_noop=False))
        self.assertFalse(result.context.sticky)
        self.assertTrue(result.context.lock_release_on_completion)

    def test_second_deploy_by_lock_holder_is_contended(self):
        first = self.run_comment(".deploy")
        self.assertEqual(first.outcome, "deploy-started")
        second = self.run_comment(".deploy")
        self.assertEqual(second.outcome, "safe-exit")
        self.assertTrue(second.context.bypass)
        self.assertFalse(second.context.lock_release_on_completion)
        self.assertIn("Cannot claim deployment lock", self.last_comment())
        self.assertEqual(len(self.gh.deployments), 1)

    def test_one_deployment_in_flight_per_environment(self):
        first = self.run_comment(".deploy")
        self.run_comment(".deploy")
        run_post(first.context, "success", self.gh)
        self.assertEqual(self.gh.refs, {})
        # only the first deploy ever ran, so bob now takes a free environment
        self.assertEqual(self.run_comment(".deploy", actor="bob").outcome, "deploy-started")
        self.assertEqual(locks.inspect(self.gh, LockKey("production")).created_by, "bob")
        self.assertEqual(len(self.gh.deployments), 2)

    def test_deploy_under_own_sticky_lock_is_contended(self):
        self.hold_lock("production", "alice")
        result = self.run_comment(".deploy")
        self.assertEqual(result.outcome, "safe-exit")
        self.assertEqual(self.gh.deployments, [])
        self.assertEqual(locks.inspect(self.gh, LockKey("production")).created_by, "alice")

    def test_lock_contention(self):
        self.hold_lock("production", "bob")
        result = self.run_comment(".deploy")
        self.assertEqual(result.outcome, "safe-exit")
        self.assertEqual(result.result, "safe-exit")
        self.assertTrue(result.context.bypass)
        self.assertIn("Cannot claim deployment lock", self.last_comment())
        self.assertIn("bob", self.last_comment())
        self.assertEqual(self.gh.deployments, [])

    def test_global_lock_blocks_deploy(self):
        key = LockKey(None)
        locks.acquire(self.gh, key, locks.build_lock(key, "bob", True, self.inputs))
        result = self.run_comment(".deploy staging")
        self.assertEqual(result.outcome, "safe-exit")
        self.assertIn("**global**", self.last_comment())

    def test_unknown_environment(self):
        result = self.run_comment(".deploy moon")
        self.assertEqual(result.outcome, "safe-exit")
        self.assertIn("No matching environment target", self.last_comment())
        self.assertEqual(self.gh.refs, {})

    def test_precheck_failure(self):
        self.gh.review_status[7]["commit_status"] = "FAILURE"
        result = self.run_comment(".deploy")
        self.assertEqual(result.outcome, "precheck-failed")
        self.assertEqual(result.result, "failure")
        self.assertEqual(self.gh.reaction_contents(COMMENT_ID), ["-1"])
        self.assertEqual(self.gh.refs, {})

    def test_commit_after_comment_fails(self):
        self.gh.add_commit(HEAD, authored_at="2024-01-01T00:10:00Z")
        result = self.run_comment(".deploy")
        self.assertEqual(result.outcome, "precheck-failed")
        self.assertIn("authored after", self.last_comment())

    def test_order_failure(self):
        self.gh.set_latest_deployment("staging", "INACTIVE", HEAD)
        inputs = Inputs(enforced_deployment_order=("staging", "production"))
        result = self.run_comment(".deploy production", inputs=inputs)
        self.assertEqual(result.outcome, "order-failed")
        self.assertEqual(result.result, "failure")
        self.assertIn("🚦 Invalid Deployment Order", self.last_comment())
        self.assertIn("🔴 **staging**", self.last_comment())
        self.assertEqual(self.gh.refs, {})

    def test_order_satisfied(self):
        self.gh.set_latest_deployment("staging", "ACTIVE", HEAD)
        inputs = Inputs(enforced_deployment_order=("staging", "production"))
        self.assertEqual(self.run_comment(".deploy production", inputs=inputs).outcome, "deploy-started")

    def test_stable_branch_skips_order(self):
        inputs = Inputs(enforced_deployment_order=("staging", "production"))
        result = self.run_comment(".deploy main", inputs=inputs)
        self.assertEqual(result.outcome, "deploy-started")
        self.assertEqual(result.context.ref, "main")

    def test_merge_required_releases_one_shot_lock(self):
        self.gh.merge_required_message = "Auto-merged main into feature on deployment."
        result = self.run_comment(".deploy")
        self.assertEqual(result.outcome, "safe-exit")
        self.assertFalse(result.context.lock_release_on_completion)
        self.assertTrue(result.context.bypass)
        self.assertEqual(self.gh.refs, {})
        self.assertIn("⚠️ Deployment Warning", self.last_comment())

    def test_merge_required_keeps_sticky_lock(self):
        self.gh.merge_required_message = "Auto-merged main into feature on deployment."
        self.run_comment(".deploy", inputs=Inputs(sticky_locks=True))
        self.assertIn("production-branch-deploy-lock", self.gh.refs)


class ContextAndPermissionTests(DispatcherTestCase):
    def test_non_pull_request_comment(self):
        event = _comment_event(".deploy")
        event["issue"].pop("pull_request")
        result = handlers.run_main(event, self.inputs, self.gh, "run-1")
        self.assertEqual(result.outcome, "safe-exit")
        self.assertEqual(self.gh.comments, [])

    def test_edited_comment_ignored(self):
        event = _comment_event(".deploy")
        event["action"] = "edited"
        self.assertEqual(handlers.run_main(event, self.inputs, self.gh, "run-1").outcome, "safe-exit")

    def test_no_trigger(self):
        result = self.run_comment("LGTM")
        self.assertEqual(result.outcome, "safe-exit")
        self.assertFalse(result.outputs["triggered"])
        self.assertEqual(self.gh.reactions, {})

    def test_permission_denied(self):
        self.gh.permissions["mallory"] = "read"
        result = self.run_comment(".deploy", actor="mallory")
        self.assertEqual(result.outcome, "permission-denied")
        self.assertEqual(result.result, "failure")
        self.assertIn("`read`", self.last_comment())
        self.assertEqual(self.gh.refs, {})

    def test_help(self):
        result = self.run_comment(".help")
        self.assertEqual(result.outcome, "help-shown")
        self.assertEqual(result.result, "safe-exit")
        self.assertIn("Branch Deployment Help", self.last_comment())
        self.assertEqual(self.gh.reaction_contents(COMMENT_ID), ["+1"])

    def test_help_requires_permission(self):
        self.gh.permissions["mallory"] = "read"
        result = self.run_comment(".help", actor="mallory")
        self.assertEqual(result.outcome, "permission-denied")
        self.assertEqual(result.result, "failure")
        self.assertNotIn("Branch Deployment Help", self.last_comment())
        self.assertEqual(self.gh.reaction_contents(COMMENT_ID), ["-1"])

    def test_naked_command_rejected(self):
        result = self.run_comment(".deploy", inputs=Inputs(disable_naked_commands=True))
        self.assertEqual(result.outcome, "safe-exit")
        self.assertTrue(result.outputs["naked_command"])
        self.assertIn("Missing Explicit Environment", self.last_comment())

    def test_explicit_command_allowed_with_naked_disabled(self):
        result = self.run_comment(".deploy production", inputs=Inputs(disable_naked_commands=True))
        self.assertEqual(result.outcome, "deploy-started")


class LockCommandTests(DispatcherTestCase):
    def test_lock_claims_sticky_lock(self):
        result = self.run_comment(".lock staging --reason db migration")
        self.assertEqual(result.outcome, "lock-acquired")
        self.assertEqual(result.result, "safe-exit")
        held = locks.inspect(self.gh, LockKey("staging"))
        self.assertTrue(held.sticky)
        self.assertEqual(held.reason, "db migration")
        self.assertEqual(held.branch, "feature")
        self.assertIn("issuecomment-555", held.link)
        self.assertIn("Deployment Lock Claimed", self.last_comment())

    def test_lock_again_is_owned(self):
        self.run_comment(".lock")
        result = self.run_comment(".lock")
        self.assertEqual(result.outcome, "lock-acquired")
        self.assertIn("already the owner", self.last_comment())

    def test_lock_contended(self):
        self.hold_lock("production", "bob")
        result = self.run_comment(".lock")
        self.assertEqual(result.outcome, "safe-exit")
        self.assertIn("Cannot claim deployment lock", self.last_comment())

    def test_global_lock(self):
        self.run_comment(".lock --global")
        self.assertIn("global-branch-deploy-lock", self.gh.refs)
        self.assertEqual(self.run_comment(".deploy staging", actor="bob").outcome, "safe-exit")

    def test_global_lock_holder_cannot_deploy_through_it(self):
        self.run_comment(".lock --global")
        self.assertEqual(self.run_comment(".deploy staging").outcome, "safe-exit")
        self.assertEqual(self.gh.deployments, [])
        self.assertEqual(self.run_comment(".lock staging").outcome, "lock-acquired")
        self.assertIn("already the owner of the current global deployment lock", self.last_comment())
        self.assertEqual(list(self.gh.refs), ["global-branch-deploy-lock"])

    def test_environment_named_global_never_takes_global_lock(self):
        inputs = Inputs(environment_targets=("production", "global"))
        result = self.run_comment(".lock global", inputs=inputs)
        self.assertEqual(result.outcome, "fatal")
        self.assertEqual(self.gh.refs, {})
        self.assertEqual(self.run_comment(".deploy production", actor="bob", inputs=inputs).outcome, "deploy-started")

    def test_reason_text_with_info_flag_still_locks(self):
        result = self.run_comment(".lock staging --reason rollout -d test")
        self.assertEqual(result.outcome, "lock-acquired")
        self.assertEqual(locks.inspect(self.gh, LockKey("staging")).reason, "rollout -d test")

    def test_unlock(self):
        self.hold_lock("production", "alice")
        result = self.run_comment(".unlock")
        self.assertEqual(result.outcome, "unlocked")
        self.assertEqual(result.result, "safe-exit")
        self.assertEqual(self.gh.refs, {})
        self.assertIn("Deployment Lock Removed", self.last_comment())

    def test_unlock_without_lock(self):
        result = self.run_comment(".unlock staging")
        self.assertEqual(result.outcome, "unlocked")
        self.assertIn("no `staging` deployment lock", self.last_comment())

    def test_lock_info(self):
        self.hold_lock("production", "bob")
        result = self.run_comment(".lock --info")
        self.assertEqual(result.outcome, "lock-info-reported")
        body = self.last_comment()
        self.assertIn("### Lock Details 🔒", body)
        self.assertIn("__bob__", body)
        self.assertIn("production-branch-deploy-lock/lock.json", body)
        self.assertIn(".unlock production", body)

    def test_lock_info_alias_reports_global(self):
        key = LockKey(None)
        locks.acquire(self.gh, key, locks.build_lock(key, "bob", True, self.inputs))
        result = self.run_comment(".wcid staging")
        self.assertEqual(result.outcome, "lock-info-reported")
        self.assertIn("**global** deploy lock", self.last_comment())

    def test_lock_info_without_lock(self):
        self.run_comment(".lock staging --details")
        self.assertIn("No active `staging` deployment locks", self.last_comment())


class FatalTests(DispatcherTestCase):
    def test_fatal_error(self):
        self.gh.review_status = MagicMock()
        self.gh.review_status.get.side_effect = RuntimeError("graphql exploded")
        result = self.run_comment(".deploy")
        self.assertEqual(result.outcome, "fatal")
        self.assertEqual(result.result, "failure")
        self.assertTrue(result.context.bypass)
        self.assertIn("graphql exploded", self.last_comment())

    def test_fatal_after_lock_releases_one_shot_lock(self):
        self.gh.fail_deployment_status = GitHubApiError(500, "status write failed")
        result = self.run_comment(".deploy")
        self.assertEqual(result.outcome, "fatal")
        self.assertEqual(self.gh.refs, {})

    def test_fatal_keeps_sticky_lock(self):
        self.gh.fail_deployment_status = GitHubApiError(500, "status write failed")
        self.run_comment(".deploy", inputs=Inputs(sticky_locks=True))
        self.assertIn("production-branch-deploy-lock", self.gh.refs)


class EventPublishingTests(DispatcherTestCase):
    def test_publishes_when_bus_configured(self):
        eb = MagicMock()
        with patch.object(handlers, "DEPLOY_EVENT_BUS", "deploy-bus"), patch.object(handlers, "_get_eb", return_value=eb):
            result = self.run_comment(".deploy")
        entry = eb.put_events.call_args.kwargs["Entries"][0]
        self.assertEqual(entry["EventBusName"], "deploy-bus")
        detail = json.loads(entry["Detail"])
        self.assertEqual(detail["context"]["deployment_id"], result.context.deployment_id)

    def test_publish_failure_does_not_fail_run(self):
        eb = MagicMock()
        eb.put_events.side_effect = RuntimeError("throttled")
        with patch.object(handlers, "DEPLOY_EVENT_BUS", "deploy-bus"), patch.object(handlers, "_get_eb", return_value=eb):
            result = self.run_comment(".deploy")
        self.assertEqual(result.outcome, "deploy-started")

    def test_no_bus_no_publish(self):
        with patch.object(handlers, "DEPLOY_EVENT_BUS", ""), patch.object(handlers, "_get_eb") as get_eb:
            self.run_comment(".deploy")
        get_eb.assert_not_called()


class MergedPullRequestTests(DispatcherTestCase):
    def test_unlock_on_merge(self):
        self.hold_lock("production", "alice", branch="feature")
        self.hold_lock("staging", "bob", branch="feature")
        self.hold_lock("development", "carol", branch="other")
        result = handlers.run_unlock_on_merge(_merged_event(), Inputs(unlock_on_merge_mode=True), self.gh, "run-2")
        self.assertEqual(result.result, "success - unlock on merge mode")
        self.assertEqual(sorted(result.outputs["unlocked_environments"]), ["production", "staging"])
        self.assertEqual(list(self.gh.refs), ["development-branch-deploy-lock"])
        self.assertIn("Deployment Locks Released", self.last_comment())

    def test_unlock_on_merge_nothing_held(self):
        result = handlers.run_unlock_on_merge(_merged_event(), self.inputs, self.gh, "run-2")
        self.assertEqual(result.outputs["unlocked_environments"], [])
        self.assertEqual(self.gh.comments, [])

    def test_merge_deploy_needed(self):
        self.gh.set_latest_deployment("production", "ACTIVE", HEAD)
        result = handlers.run_merge_deploy(_merged_event(), self.inputs, self.gh, "run-3")
        self.assertEqual(result.result, "success - merge deploy mode")
        self.assertTrue(result.outputs["continue"])
        self.assertEqual(result.outputs["environment"], "production")

    def test_merge_deploy_already_active(self):
        self.gh.set_latest_deployment("production", "ACTIVE", self.gh.branches["main"])
        result = handlers.run_merge_deploy(_merged_event(), self.inputs, self.gh, "run-3")
        self.assertFalse(result.outputs["continue"])


if __name__ == "__main__":
    unittest.main()
