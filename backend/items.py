from typing import List, Optional

from errors import InvalidInput, ItemAlreadyOnLoan, NotFound, Unauthorized
from logger import get_logger
from repository import Repository
from schemas import Item, ItemWithOwnerSummary, validate_level
from visibility import VisibilityEngine

logger = get_logger("trustshelf.items")

EDITABLE_FIELDS = ("title", "description", "category", "required_trust_level", "hidden", "image_url")


class ItemCatalog:
    """Owner-only writes over the item catalog."""

    def __init__(self, repo: Repository, visibility: VisibilityEngine):
        self.repo = repo
        self.visibility = visibility

    async def create_item(self, owner_id: str, title: str, category: str, required_trust_level,
                          description: str = "", hidden: bool = False,
                          image_url: Optional[str] = None) -> Item:
        level = validate_level(required_trust_level, "required_trust_level")
        if not (title or "").strip() or not (category or "").strip():
            raise InvalidInput("Title and category are required")
        item = await self.repo.insert_item(Item(
            title=title.strip(),
            description=description or "",
            category=category.strip(),
            owner_id=owner_id,
            required_trust_level=level,
            hidden=hidden,
            image_url=image_url,
        ))
        logger.info(f"item created id={item.id} owner={owner_id}")
        return item

    async def _owned(self, item_id: str, actor_id: str) -> Item:
        item = await self.repo.get_item(item_id)
        if item is None:
            raise NotFound("Item not found", {"item_id": item_id})
        if item.owner_id != actor_id:
            logger.warning(f"item write refused id={item_id} actor={actor_id}")
            raise Unauthorized("Not owner", {"item_id": item_id})
        return item

    async def update_item(self, item_id: str, actor_id: str, **fields) -> Item:
        await self._owned(item_id, actor_id)
        updates = {k: v for k, v in fields.items() if k in EDITABLE_FIELDS and v is not None}
        if "required_trust_level" in updates:
            updates["required_trust_level"] = validate_level(updates["required_trust_level"], "required_trust_level")
        for key in ("title", "category"):
            if key in updates and not str(updates[key]).strip():
                raise InvalidInput(f"{key} cannot be empty")
        item = await self.repo.update_item(item_id, actor_id, updates)
        if item is None:
            raise NotFound("Item not found", {"item_id": item_id})
        logger.info(f"item updated id={item_id} fields={sorted(updates)}")
        return item

    async def delete_item(self, item_id: str, actor_id: str) -> None:
        await self._owned(item_id, actor_id)
        active = await self.repo.find_active_loan(item_id)
        if active is not None:
            raise ItemAlreadyOnLoan("Item is on loan and cannot be deleted", {"item_id": item_id, "loan_id": active.id})
        if not await self.repo.delete_item(item_id, actor_id):
            raise NotFound("Item not found", {"item_id": item_id})
        logger.info(f"item deleted id={item_id}")

    async def my_items(self, owner_id: str) -> List[Item]:
        return await self.repo.list_items(owner_id=owner_id)

    async def search_my_items(self, owner_id: str, query: str) -> List[Item]:
        query = (query or "").strip()
        if not query:
            raise InvalidInput("Search query is required")
        return [i for i in await self.my_items(owner_id) if i.matches(query)]

    async def get_item(self, item_id: str, viewer_id: str) -> ItemWithOwnerSummary:
        item = await self.repo.get_item(item_id)
        if item is None:
            raise NotFound("Item not found", {"item_id": item_id})
        if item.owner_id != viewer_id and not await self.visibility.is_visible(viewer_id, item):
            raise NotFound("Item not found", {"item_id": item_id})
        [entry] = await self.visibility.with_owners([item])
        return entry
