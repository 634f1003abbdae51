import logging
from datetime import datetime
from typing import List, Optional

from .errors import InvalidState, ItemNotFound
from .repositories import Store, UnitOfWork
from .schemas import ACTIVE_HOLD_STATUSES, OPEN_LOAN_STATUSES, CatalogItem, ItemStatus

logger = logging.getLogger(__name__)


class Catalog:
    """
    Catalog items and their cached circulation status.

    Reads are open to anyone; ``set_status`` only stages a change inside a
    unit of work, so the status is written when the coordinator commits.
    """

    def __init__(self, store: Store) -> None:
        self.store = store

    def register(
        self,
        title: str,
        author: str,
        isbn: Optional[str] = None,
        category: Optional[str] = None,
    ) -> CatalogItem:
        item = CatalogItem(title=title, author=author, isbn=isbn, category=category)
        self.store.commit(items=[item])
        logger.info("registered item %s (%s)", item.id, title)
        return item

    def get(self, item_id: str) -> CatalogItem:
        item = self.store.items.get(item_id)
        if item is None or item.deleted:
            raise ItemNotFound(f"Item {item_id} not found")
        return item

    def get_status(self, item_id: str) -> ItemStatus:
        return self.get(item_id).status

    def list_items(self, status: Optional[ItemStatus] = None) -> List[CatalogItem]:
        items = [i for i in self.store.items.list_all() if not i.deleted]
        if status is not None:
            items = [i for i in items if i.status == status]
        return sorted(items, key=lambda i: i.title.lower())

    def set_status(
        self,
        uow: UnitOfWork,
        item: CatalogItem,
        status: ItemStatus,
        now: datetime,
        reserved_for: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> CatalogItem:
        updated = item.model_copy(
            update={
                "status": status,
                "reserved_for": reserved_for if status == ItemStatus.RESERVED else None,
                "status_reason": reason,
                "updated_at": now,
            }
        )
        return uow.stage_item(updated)

    def soft_delete(self, uow: UnitOfWork, item: CatalogItem, now: datetime) -> CatalogItem:
        # Items referenced by live loans or holds stay in the catalog
        if any(l.status in OPEN_LOAN_STATUSES for l in uow.loans_for_item(item.id)):
            raise InvalidState("Item has an open loan")
        if any(r.status in ACTIVE_HOLD_STATUSES for r in uow.reservations_for_item(item.id)):
            raise InvalidState("Item has active holds")
        return uow.stage_item(item.model_copy(update={"deleted": True, "updated_at": now}))
