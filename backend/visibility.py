"""
Which items a viewer may see.

An item is visible to a viewer iff the viewer is not its owner, the item is
not hidden, and the owner's own edge toward the viewer is at least the
item's required level. Trust never carries through intermediaries; only the
direct owner -> viewer edge is consulted. Nothing is cached, so trust and
item changes are reflected on the next read.
"""

from typing import List

from repository import Repository
from schemas import Item, ItemWithOwnerSummary, UserSummary
from trust import NO_TRUST, TrustStore


def grants_access(item: Item, viewer_id: str, level: int) -> bool:
    if item.owner_id == viewer_id or item.hidden:
        return False
    return level >= item.required_trust_level


class VisibilityEngine:
    def __init__(self, repo: Repository, trust: TrustStore):
        self.repo = repo
        self.trust = trust

    async def visible_items(self, viewer_id: str) -> List[ItemWithOwnerSummary]:
        levels = await self.trust.levels_toward(viewer_id)
        candidates = await self.repo.list_items(exclude_owner_id=viewer_id, include_hidden=False)
        visible = [
            item for item in candidates
            if grants_access(item, viewer_id, levels.get(item.owner_id, NO_TRUST))
        ]
        return await self.with_owners(visible)

    async def is_visible(self, viewer_id: str, item: Item) -> bool:
        if item.owner_id == viewer_id or item.hidden:
            return False
        level = await self.trust.get_trust(item.owner_id, viewer_id)
        return grants_access(item, viewer_id, level)

    async def search_items(self, viewer_id: str, query: str) -> List[ItemWithOwnerSummary]:
        query = (query or "").strip()
        if not query:
            return []
        return [entry for entry in await self.visible_items(viewer_id) if entry.item.matches(query)]

    async def with_owners(self, items: List[Item]) -> List[ItemWithOwnerSummary]:
        owners = await self.repo.get_users(list({i.owner_id for i in items}))
        return [
            ItemWithOwnerSummary(item=i, owner=UserSummary.from_user(owners.get(i.owner_id), i.owner_id))
            for i in items
        ]
