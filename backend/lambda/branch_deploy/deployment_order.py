"""deployment_order.py — Enforced deployment order validation."""
from __future__ import annotations

from typing import Sequence

from config import logger
from deployment import is_active_at
from models import OrderEntry, OrderResult

__all__ = ["valid_deployment_order"]


def valid_deployment_order(gh, order: Sequence[str], environment: str, sha: str) -> OrderResult:
    """Every environment before ``environment`` in ``order`` must be ACTIVE at ``sha``.

    A target that is not part of the order has nothing before it and passes.
    """
    if environment not in order:
        return OrderResult(valid=True, results=[])

    previous = list(order)[: list(order).index(environment)]
    results = [OrderEntry(environment=env, active=is_active_at(gh, env, sha)) for env in previous]
    valid = all(entry.active for entry in results)
    if not valid:
        logger.info(
            "[INFO] deployment order blocked for %s: inactive=%s",
            environment, [e.environment for e in results if not e.active],
        )
    return OrderResult(valid=valid, results=results)
