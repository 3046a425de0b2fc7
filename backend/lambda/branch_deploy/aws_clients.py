"""aws_clients.py — Singleton AWS service clients (Secrets Manager, EventBridge) and secret cache."""
from __future__ import annotations

import time
from typing import Dict, Tuple

import boto3
from botocore.config import Config

from config import SECRETS_REGION

__all__ = [
    "_get_eb",
    "_get_secret",
    "_get_secretsmanager",
    "_reset_secret_cache",
]

# ---------------------------------------------------------------------------
# AWS client singletons
# ---------------------------------------------------------------------------

_secretsmanager = None
_eb = None


def _get_secretsmanager():
    global _secretsmanager
    if _secretsmanager is None:
        _secretsmanager = boto3.client(
            "secretsmanager",
            region_name=SECRETS_REGION,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _secretsmanager


def _get_eb():
    global _eb
    if _eb is None:
        _eb = boto3.client(
            "events",
            region_name=SECRETS_REGION,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _eb


# ---------------------------------------------------------------------------
# Secret cache
# ---------------------------------------------------------------------------

_SECRET_TTL: float = 3600.0  # re-fetch from Secrets Manager every hour
_secret_cache: Dict[str, Tuple[str, float]] = {}


def _get_secret(secret_id: str) -> str:
    """Fetch a SecretString from Secrets Manager (cached per secret id)."""
    now = time.time()
    cached = _secret_cache.get(secret_id)
    if cached and (now - cached[1]) < _SECRET_TTL:
        return cached[0]

    resp = _get_secretsmanager().get_secret_value(SecretId=secret_id)
    value = resp["SecretString"]
    _secret_cache[secret_id] = (value, now)
    return value


def _reset_secret_cache() -> None:
    _secret_cache.clear()
