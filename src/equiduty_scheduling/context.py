"""Organization context loading: stables, permissions, subscription and feature flags in parallel."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any, Dict, List, Sequence

logger = logging.getLogger(__name__)


@dataclass
class OrganizationContext:
    organization_id: str
    stables: List[Dict[str, Any]] = field(default_factory=list)
    permissions: Dict[str, Any] = field(default_factory=dict)
    subscription: Dict[str, Any] = field(default_factory=dict)
    feature_flags: Dict[str, bool] = field(default_factory=dict)
    # Branch name -> error message for loaders that failed.
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.failures

    def can(self, action: str) -> bool:
        if self.permissions.get("isSystemAdmin") or self.permissions.get("isOrgOwner"):
            return True
        return bool((self.permissions.get("permissions") or {}).get(action))


async def load_organization_context(
    client: Any,
    organization_id: str,
    features: Sequence[str] = (),
) -> OrganizationContext:
    """
    Load every piece of organization context concurrently.

    A failing branch is logged and left at its default; the other branches
    still land in the result. A branch that was cancelled on its own counts as
    a failed branch; cancelling the caller still propagates through ``gather``.
    """
    branches = {
        "stables": client.list_stables(organization_id),
        "permissions": client.get_my_permissions(organization_id),
        "subscription": client.get_subscription(organization_id),
    }
    if features:
        branches["feature_flags"] = client.check_features(organization_id, list(features))

    results = await asyncio.gather(*branches.values(), return_exceptions=True)

    context = OrganizationContext(organization_id=organization_id)
    for name, result in zip(branches, results):
        if isinstance(result, (Exception, asyncio.CancelledError)):
            logger.warning(
                "organization_context_branch_failed organization_id=%s branch=%s",
                organization_id,
                name,
                exc_info=result,
            )
            context.failures[name] = str(result) or type(result).__name__
            continue
        setattr(context, name, result)

    logger.info(
        "organization_context_loaded organization_id=%s stables=%d failed=%s",
        organization_id,
        len(context.stables),
        ",".join(sorted(context.failures)) or "-",
    )
    return context
