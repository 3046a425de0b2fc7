"""config.py — Environment-driven settings for the branch-deploy Lambda.

Two kinds of settings live here:

- Runtime settings (GitHub endpoints, credentials, AWS wiring) read once at
  import time into module constants.
- Command inputs (triggers, environments, lock policy) loaded into an
  immutable ``Inputs`` snapshot by ``load_inputs()`` so one invocation never
  sees a half-updated configuration.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

__all__ = [
    "CORS_ORIGIN",
    "DEPLOY_EVENT_BUS",
    "DEPLOY_EVENT_DETAIL_TYPE",
    "DEPLOY_EVENT_SOURCE",
    "GITHUB_API_BASE",
    "GITHUB_APP_ID",
    "GITHUB_GRAPHQL_URL",
    "GITHUB_HTTP_TIMEOUT_SECONDS",
    "GITHUB_INSTALLATION_ID",
    "GITHUB_PRIVATE_KEY_SECRET",
    "GITHUB_RETRY_BACKOFF_SECONDS",
    "GITHUB_SERVER_URL",
    "GITHUB_TOKEN",
    "GITHUB_TOKEN_SECRET",
    "GITHUB_WEBHOOK_SECRET_NAME",
    "GLOBAL_LOCK_BRANCH",
    "GLOBAL_LOCK_NAME",
    "Inputs",
    "LOCK_BRANCH_SUFFIX",
    "LOCK_FILE",
    "LOCK_INFO_FLAGS",
    "LOCK_REASON_FLAG",
    "RUN_LOG_URL_TEMPLATE",
    "SECRETS_REGION",
    "_DEPLOYMENT_TRANSITIONS",
    "load_inputs",
    "logger",
]


def _env_bool(raw: Optional[str], default: bool = False) -> bool:
    if raw is None or str(raw).strip() == "":
        return default
    return str(raw).strip().lower() == "true"


def _env_list(raw: Optional[str]) -> Tuple[str, ...]:
    """Split a comma separated env value into trimmed, non-empty items."""
    if not raw:
        return ()
    items: list[str] = []
    for part in str(raw).split(","):
        item = part.strip()
        if item:
            items.append(item)
    return tuple(items)


# ---------------------------------------------------------------------------
# Runtime configuration
# ---------------------------------------------------------------------------

GITHUB_API_BASE = os.environ.get("GITHUB_API_BASE", "https://api.github.com").rstrip("/")
GITHUB_GRAPHQL_URL = os.environ.get("GITHUB_GRAPHQL_URL", f"{GITHUB_API_BASE}/graphql")
GITHUB_SERVER_URL = os.environ.get("GITHUB_SERVER_URL", "https://github.com").rstrip("/")
GITHUB_TOKEN = os.environ.get("GITHUB_TOKEN", "")
GITHUB_TOKEN_SECRET = os.environ.get("GITHUB_TOKEN_SECRET", "")
GITHUB_APP_ID = os.environ.get("GITHUB_APP_ID", "")
GITHUB_INSTALLATION_ID = os.environ.get("GITHUB_INSTALLATION_ID", "")
GITHUB_PRIVATE_KEY_SECRET = os.environ.get(
    "GITHUB_PRIVATE_KEY_SECRET", "devops/github-app/private-key"
)
GITHUB_WEBHOOK_SECRET_NAME = os.environ.get(
    "GITHUB_WEBHOOK_SECRET", "devops/github-app/webhook-secret"
)
GITHUB_HTTP_TIMEOUT_SECONDS = float(os.environ.get("GITHUB_HTTP_TIMEOUT_SECONDS", "15"))
GITHUB_RETRY_BACKOFF_SECONDS = tuple(
    float(part) for part in _env_list(os.environ.get("GITHUB_RETRY_BACKOFF_SECONDS", "1,2,4"))
)
SECRETS_REGION = os.environ.get("SECRETS_REGION", os.environ.get("AWS_REGION", "us-west-2"))

DEPLOY_EVENT_BUS = os.environ.get("DEPLOY_EVENT_BUS", "")
DEPLOY_EVENT_SOURCE = os.environ.get("DEPLOY_EVENT_SOURCE", "issueops.branch-deploy")
DEPLOY_EVENT_DETAIL_TYPE = os.environ.get("DEPLOY_EVENT_DETAIL_TYPE", "Deployment Started")

CORS_ORIGIN = os.environ.get("CORS_ORIGIN", "*")

RUN_LOG_URL_TEMPLATE = os.environ.get(
    "RUN_LOG_URL_TEMPLATE", "{server_url}/{owner}/{repo}/actions/runs/{run_id}"
)

# ---------------------------------------------------------------------------
# Lock storage layout
# ---------------------------------------------------------------------------

LOCK_BRANCH_SUFFIX = "branch-deploy-lock"
# reserved: no environment may share the global lock's ref
GLOBAL_LOCK_NAME = "global"
GLOBAL_LOCK_BRANCH = f"{GLOBAL_LOCK_NAME}-{LOCK_BRANCH_SUFFIX}"
LOCK_FILE = "lock.json"
LOCK_INFO_FLAGS = ("--info", "-i", "--details", "-d")
LOCK_REASON_FLAG = "--reason"

# ---------------------------------------------------------------------------
# Deployment status transitions (forward only)
# ---------------------------------------------------------------------------

_DEPLOYMENT_TRANSITIONS = {
    "queued": {"in_progress", "failure"},
    "in_progress": {"success", "failure"},
    "success": {"inactive"},
    "failure": set(),
    "inactive": set(),
}

_UPDATE_BRANCH_MODES = {"disabled", "warn", "force"}


# ---------------------------------------------------------------------------
# Command inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Inputs:
    trigger: str = ".deploy"
    noop_trigger: str = ".noop"
    lock_trigger: str = ".lock"
    unlock_trigger: str = ".unlock"
    help_trigger: str = ".help"
    lock_info_alias: str = ".wcid"
    reaction: str = "eyes"
    environment: str = "production"
    environment_targets: Tuple[str, ...] = ("production", "development", "staging")
    environment_urls: Dict[str, Optional[str]] = field(default_factory=dict)
    production_environments: Tuple[str, ...] = ("production",)
    stable_branch: str = "main"
    param_separator: str = "|"
    sticky_locks: bool = False
    sticky_locks_for_noop: bool = False
    enforced_deployment_order: Tuple[str, ...] = ()
    required_contexts: Tuple[str, ...] = ()
    update_branch: str = "warn"
    permissions: Tuple[str, ...] = ("write", "admin")
    allow_sha_deployments: bool = False
    allow_forks: bool = True
    skip_ci: Tuple[str, ...] = ()
    skip_reviews: Tuple[str, ...] = ()
    admins: Tuple[str, ...] = ()
    global_lock_flag: str = "--global"
    disable_naked_commands: bool = False
    commit_verification: bool = False
    unlock_on_merge_mode: bool = False
    merge_deploy_mode: bool = False


def _parse_environment_urls(raw: Optional[str]) -> Dict[str, Optional[str]]:
    """Parse ``env|url,env|url``; a url of ``disabled`` maps to None."""
    urls: Dict[str, Optional[str]] = {}
    for entry in _env_list(raw):
        env, sep, url = entry.partition("|")
        if not sep or not env.strip():
            raise ValueError(f"Invalid ENVIRONMENT_URLS entry '{entry}': expected 'environment|url'")
        url = url.strip()
        urls[env.strip()] = None if url in ("", "disabled") else url
    return urls


def _parse_required_contexts(raw: Optional[str]) -> Tuple[str, ...]:
    if raw is None or raw.strip() in ("", "false"):
        return ()
    return _env_list(raw)


def load_inputs(environ: Optional[Mapping[str, str]] = None) -> Inputs:
    """Build an ``Inputs`` snapshot from environment variables."""
    env = os.environ if environ is None else environ
    defaults = Inputs()

    update_branch = env.get("UPDATE_BRANCH", defaults.update_branch).strip().lower()
    if update_branch not in _UPDATE_BRANCH_MODES:
        raise ValueError(
            f"Invalid UPDATE_BRANCH '{update_branch}': expected one of {sorted(_UPDATE_BRANCH_MODES)}"
        )

    admins = _env_list(env.get("ADMINS", ""))
    if admins == ("false",):
        admins = ()

    environment = env.get("ENVIRONMENT", defaults.environment)
    environment_targets = _env_list(env.get("ENVIRONMENT_TARGETS", ",".join(defaults.environment_targets)))
    if any(name.strip() == GLOBAL_LOCK_NAME for name in (environment, *environment_targets)):
        raise ValueError(
            f"Environment name '{GLOBAL_LOCK_NAME}' is reserved for the global deploy lock"
        )

    return Inputs(
        trigger=env.get("TRIGGER", defaults.trigger),
        noop_trigger=env.get("NOOP_TRIGGER", defaults.noop_trigger),
        lock_trigger=env.get("LOCK_TRIGGER", defaults.lock_trigger),
        unlock_trigger=env.get("UNLOCK_TRIGGER", defaults.unlock_trigger),
        help_trigger=env.get("HELP_TRIGGER", defaults.help_trigger),
        lock_info_alias=env.get("LOCK_INFO_ALIAS", defaults.lock_info_alias),
        reaction=env.get("REACTION", defaults.reaction),
        environment=environment,
        environment_targets=environment_targets,
        environment_urls=_parse_environment_urls(env.get("ENVIRONMENT_URLS", "")),
        production_environments=_env_list(
            env.get("PRODUCTION_ENVIRONMENTS", ",".join(defaults.production_environments))
        ),
        stable_branch=env.get("STABLE_BRANCH", defaults.stable_branch),
        param_separator=env.get("PARAM_SEPARATOR", defaults.param_separator),
        sticky_locks=_env_bool(env.get("STICKY_LOCKS")),
        sticky_locks_for_noop=_env_bool(env.get("STICKY_LOCKS_FOR_NOOP")),
        enforced_deployment_order=_env_list(env.get("ENFORCED_DEPLOYMENT_ORDER", "")),
        required_contexts=_parse_required_contexts(env.get("REQUIRED_CONTEXTS")),
        update_branch=update_branch,
        permissions=_env_list(env.get("PERMISSIONS", ",".join(defaults.permissions))),
        allow_sha_deployments=_env_bool(env.get("ALLOW_SHA_DEPLOYMENTS")),
        allow_forks=_env_bool(env.get("ALLOW_FORKS"), default=True),
        skip_ci=_env_list(env.get("SKIP_CI", "")),
        skip_reviews=_env_list(env.get("SKIP_REVIEWS", "")),
        admins=admins,
        global_lock_flag=env.get("GLOBAL_LOCK_FLAG", defaults.global_lock_flag),
        disable_naked_commands=_env_bool(env.get("DISABLE_NAKED_COMMANDS")),
        commit_verification=_env_bool(env.get("COMMIT_VERIFICATION")),
        unlock_on_merge_mode=_env_bool(env.get("UNLOCK_ON_MERGE_MODE")),
        merge_deploy_mode=_env_bool(env.get("MERGE_DEPLOY_MODE")),
    )


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())
