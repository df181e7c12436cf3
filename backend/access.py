"""
What happens when someone scans an item's QR code.

The outcome is one of login, request_trust, insufficient_trust or view.
Checks run owner first, then hidden, then trust. A hidden item, for anyone
but its owner, answers NotFound exactly like an id that does not exist, so
a scan never reveals that a hidden item is there.
"""

from typing import Optional

from errors import NotFound
from logger import get_logger
from repository import Repository
from schemas import AccessAction, AccessDecision
from trust import NO_TRUST, TrustStore
from visibility import VisibilityEngine, grants_access

logger = get_logger("trustshelf.access")


class AccessDecider:
    def __init__(self, repo: Repository, trust: TrustStore, visibility: VisibilityEngine):
        self.repo = repo
        self.trust = trust
        self.visibility = visibility

    async def decide(self, scanner_id: Optional[str], item_id: str) -> AccessDecision:
        if scanner_id is None:
            return AccessDecision(
                action=AccessAction.LOGIN,
                item_id=item_id,
                message="Sign in to view this item.",
            )

        item = await self.repo.get_item(item_id)
        if item is None or (item.hidden and item.owner_id != scanner_id):
            raise NotFound("Item not found", {"item_id": item_id})

        if item.owner_id == scanner_id:
            [entry] = await self.visibility.with_owners([item])
            return AccessDecision(action=AccessAction.VIEW, item_id=item_id, owner_id=item.owner_id, item=entry)

        level = await self.trust.get_trust(item.owner_id, scanner_id)
        if level == NO_TRUST:
            logger.info(f"scan item={item_id} scanner={scanner_id} action=request_trust")
            return AccessDecision(
                action=AccessAction.REQUEST_TRUST,
                item_id=item_id,
                owner_id=item.owner_id,
                message="You are not connected to this item's owner yet. Ask them to trust you.",
            )
        if not grants_access(item, scanner_id, level):
            logger.info(f"scan item={item_id} scanner={scanner_id} action=insufficient_trust")
            return AccessDecision(
                action=AccessAction.INSUFFICIENT_TRUST,
                item_id=item_id,
                owner_id=item.owner_id,
                required_level=item.required_trust_level,
                current_level=level,
                message="Your trust level is too low to view this item.",
            )

        [entry] = await self.visibility.with_owners([item])
        return AccessDecision(action=AccessAction.VIEW, item_id=item_id, owner_id=item.owner_id, item=entry)
