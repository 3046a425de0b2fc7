"""test_deployment.py — Deployment creation, forward-only status transitions, order validation."""

from __future__ import annotations

import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(__file__))

from config import Inputs  # noqa: E402
from deployment import create_deployment, is_active_at, set_status  # noqa: E402
from deployment_order import valid_deployment_order  # noqa: E402
from fake_github import FakeGitHub  # noqa: E402
from models import Deployment, MergeRequired  # noqa: E402

SHA = "a" * 40


class CreateDeploymentTests(unittest.TestCase):
    def setUp(self):
        self.gh = FakeGitHub()

    def test_payload(self):
        inputs = Inputs(required_contexts=("ci/build",))
        created = create_deployment(
            self.gh, "production", "feature", SHA, inputs, params="--cpu=2", parsed_params={"cpu": 2, "_": []},
        )
        self.assertIsInstance(created, Deployment)
        self.assertEqual(created.status, "queued")
        request = self.gh.deployments[0]
        self.assertEqual(request["ref"], "feature")
        self.assertTrue(request["auto_merge"])
        self.assertTrue(request["production_environment"])
        self.assertEqual(request["required_contexts"], ["ci/build"])
        self.assertEqual(
            request["payload"],
            {"type": "branch-deploy", "sha": SHA, "params": "--cpu=2", "parsed_params": {"cpu": 2, "_": []}},
        )

    def test_auto_merge_off_for_sha_and_disabled_updates(self):
        create_deployment(self.gh, "staging", SHA, SHA, Inputs(), sha_deploy=True)
        create_deployment(self.gh, "staging", "feature", SHA, Inputs(update_branch="disabled"))
        self.assertFalse(self.gh.deployments[0]["auto_merge"])
        self.assertFalse(self.gh.deployments[1]["auto_merge"])
        self.assertFalse(self.gh.deployments[0]["production_environment"])

    def test_merge_required(self):
        self.gh.merge_required_message = "Auto-merged main into feature on deployment."
        created = create_deployment(self.gh, "production", "feature", SHA, Inputs())
        self.assertIsInstance(created, MergeRequired)
        self.assertIn("Auto-merged", created.message)

    def test_missing_id_without_merge_message_raises(self):
        self.gh.create_deployment = lambda payload: (409, {"message": "Conflict merging main into feature."})
        with self.assertRaises(ValueError):
            create_deployment(self.gh, "production", "feature", SHA, Inputs())


class StatusTransitionTests(unittest.TestCase):
    def setUp(self):
        self.gh = FakeGitHub()
        self.deployment = create_deployment(self.gh, "production", "feature", SHA, Inputs())

    def test_forward_path(self):
        set_status(self.gh, self.deployment, "in_progress", log_url="https://logs/1")
        set_status(self.gh, self.deployment, "success", log_url="https://logs/1", environment_url="https://example.com")
        set_status(self.gh, self.deployment, "inactive")
        self.assertEqual([h["to"] for h in self.deployment.history], ["queued", "in_progress", "success", "inactive"])
        self.assertEqual(self.gh.deployment_statuses[1][1]["environment_url"], "https://example.com")
        self.assertEqual(self.gh.deployment_statuses[0][1]["log_url"], "https://logs/1")

    def test_queued_can_fail(self):
        set_status(self.gh, self.deployment, "failure")
        self.assertEqual(self.deployment.status, "failure")

    def test_backwards_transition_rejected(self):
        set_status(self.gh, self.deployment, "in_progress")
        set_status(self.gh, self.deployment, "success")
        with self.assertRaises(ValueError):
            set_status(self.gh, self.deployment, "in_progress")
        self.assertEqual(len(self.gh.deployment_statuses), 2)

    def test_terminal_failure(self):
        set_status(self.gh, self.deployment, "failure")
        with self.assertRaises(ValueError):
            set_status(self.gh, self.deployment, "success")

    def test_skipping_in_progress_rejected(self):
        with self.assertRaises(ValueError):
            set_status(self.gh, self.deployment, "success")


class ActivityTests(unittest.TestCase):
    def test_is_active_at(self):
        gh = FakeGitHub()
        self.assertFalse(is_active_at(gh, "staging", SHA))
        gh.set_latest_deployment("staging", "ACTIVE", SHA)
        self.assertTrue(is_active_at(gh, "staging", SHA))
        self.assertFalse(is_active_at(gh, "staging", "b" * 40))
        gh.set_latest_deployment("staging", "INACTIVE", SHA)
        self.assertFalse(is_active_at(gh, "staging", SHA))


class DeploymentOrderTests(unittest.TestCase):
    def setUp(self):
        self.gh = FakeGitHub()
        self.order = ("development", "staging", "production")

    def test_first_environment_is_always_valid(self):
        result = valid_deployment_order(self.gh, self.order, "development", SHA)
        self.assertTrue(result.valid)
        self.assertEqual(result.results, [])

    def test_target_outside_order_is_valid(self):
        self.assertTrue(valid_deployment_order(self.gh, self.order, "sandbox", SHA).valid)

    def test_all_previous_active(self):
        self.gh.set_latest_deployment("development", "ACTIVE", SHA)
        self.gh.set_latest_deployment("staging", "ACTIVE", SHA)
        result = valid_deployment_order(self.gh, self.order, "production", SHA)
        self.assertTrue(result.valid)
        self.assertEqual([e.environment for e in result.results], ["development", "staging"])

    def test_inactive_staging_blocks_production(self):
        self.gh.set_latest_deployment("staging", "INACTIVE", SHA)
        result = valid_deployment_order(self.gh, ("staging", "production"), "production", SHA)
        self.assertFalse(result.valid)
        self.assertEqual([(e.environment, e.active) for e in result.results], [("staging", False)])

    def test_active_at_other_sha_blocks(self):
        self.gh.set_latest_deployment("development", "ACTIVE", "b" * 40)
        self.assertFalse(valid_deployment_order(self.gh, self.order, "staging", SHA).valid)


if __name__ == "__main__":
    unittest.main()
