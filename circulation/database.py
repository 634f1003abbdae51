"""
MongoDB persistence for the circulation engine.

Each entity lives in the collection named after its schema (see
``schemas.py``); the entity id is the document ``_id``. Without
``DATABASE_URL`` / ``DATABASE_NAME`` the service falls back to the
in-memory store.
"""

import logging
import os
from datetime import datetime
from enum import Enum
from typing import List, Optional, Type

from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from .errors import Busy
from .repositories import (
    ItemRepository,
    LoanRepository,
    NotificationLog,
    ReservationRepository,
    Store,
)
from .schemas import (
    OPEN_LOAN_STATUSES,
    CatalogItem,
    Loan,
    LoanStatus,
    NotificationEvent,
    Reservation,
    ReservationStatus,
    as_utc,
)

logger = logging.getLogger(__name__)


def get_database(url: Optional[str] = None, name: Optional[str] = None) -> Optional[Database]:
    url = url or os.getenv("DATABASE_URL")
    name = name or os.getenv("DATABASE_NAME")
    if not url or not name:
        return None
    client = MongoClient(url, tz_aware=True)
    return client[name]


def to_document(model: BaseModel) -> dict:
    doc = {}
    for key, value in model.model_dump().items():
        if isinstance(value, Enum):
            value = value.value
        doc[key] = value
    if "id" in doc:
        doc["_id"] = doc.pop("id")
    return doc


def from_document(model: Type[BaseModel], doc: dict) -> BaseModel:
    data = {**doc}
    data["id"] = str(data.pop("_id"))
    for key, value in list(data.items()):
        if isinstance(value, datetime):
            data[key] = as_utc(value)
    if "id" not in model.model_fields:
        data.pop("id")
    return model(**data)


class _MongoRepository:
    collection_name = ""
    model: Type[BaseModel] = BaseModel

    def __init__(self, db: Database) -> None:
        self.collection = db[self.collection_name]

    def get_documents(self, filter_dict: Optional[dict] = None) -> list:
        docs = self.collection.find(filter_dict or {})
        return [from_document(self.model, d) for d in docs]

    def get(self, entity_id: str):
        doc = self.collection.find_one({"_id": entity_id})
        return from_document(self.model, doc) if doc else None

    def list_all(self) -> list:
        return self.get_documents()

    def save(self, entity, session=None) -> None:
        self.collection.replace_one({"_id": entity.id}, to_document(entity), upsert=True, session=session)


class MongoItemRepository(_MongoRepository, ItemRepository):
    collection_name = "item"
    model = CatalogItem

    def save_versioned(self, item: CatalogItem, session=None) -> None:
        """Write the item only if the stored version is the one it was read at."""
        if item.version == 0:
            try:
                self.collection.insert_one(to_document(item), session=session)
            except DuplicateKeyError:
                raise Busy(f"Item {item.id} already exists") from None
            return
        result = self.collection.replace_one(
            {"_id": item.id, "version": item.version - 1}, to_document(item), session=session
        )
        if result.matched_count == 0:
            raise Busy(f"Item {item.id} was changed by another writer, retry shortly")


class MongoLoanRepository(_MongoRepository, LoanRepository):
    collection_name = "loan"
    model = Loan

    def list_for_item(self, item_id: str) -> List[Loan]:
        return self.get_documents({"item_id": item_id})

    def list_by_borrower(self, borrower_id: str) -> List[Loan]:
        return self.get_documents({"borrower_id": borrower_id})

    def list_open(self) -> List[Loan]:
        return self.get_documents({"status": {"$in": [s.value for s in OPEN_LOAN_STATUSES]}})

    def flag_overdue(self, loan_id: str, fine_amount: float) -> Optional[Loan]:
        before = self.collection.find_one_and_update(
            {"_id": loan_id, "status": {"$in": [s.value for s in OPEN_LOAN_STATUSES]}},
            {"$set": {"status": LoanStatus.OVERDUE.value}, "$max": {"fine_amount": fine_amount}},
            return_document=ReturnDocument.BEFORE,
        )
        return from_document(Loan, before) if before else None


class MongoReservationRepository(_MongoRepository, ReservationRepository):
    collection_name = "reservation"
    model = Reservation

    def __init__(self, db: Database) -> None:
        super().__init__(db)
        self.counters = db["counter"]

    def list_for_item(self, item_id: str) -> List[Reservation]:
        return self.get_documents({"item_id": item_id})

    def list_by_borrower(self, borrower_id: str) -> List[Reservation]:
        return self.get_documents({"borrower_id": borrower_id})

    def list_by_status(self, *statuses: ReservationStatus) -> List[Reservation]:
        return self.get_documents({"status": {"$in": [s.value for s in statuses]}})

    def next_sequence(self) -> int:
        counter = self.counters.find_one_and_update(
            {"_id": self.collection_name},
            {"$inc": {"value": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(counter["value"])


class MongoNotificationLog(NotificationLog):
    collection_name = "notification"

    def __init__(self, db: Database) -> None:
        self.collection = db[self.collection_name]

    def record(self, event: NotificationEvent) -> bool:
        doc = to_document(event)
        doc["_id"] = event.key
        try:
            self.collection.insert_one(doc)
        except DuplicateKeyError:
            return False
        return True

    def has(self, key: str) -> bool:
        return self.collection.find_one({"_id": key}) is not None

    def list_all(self) -> List[NotificationEvent]:
        return [from_document(NotificationEvent, d) for d in self.collection.find().sort("created_at", ASCENDING)]


class MongoStore(Store):
    """
    Store backed by a MongoDB database. With ``use_transactions`` (replica
    set or sharded cluster required) a commit is one multi-document
    transaction; otherwise documents are written in order and the ones
    already written are restored if a later write fails.
    """

    def __init__(self, db: Database, use_transactions: bool = False) -> None:
        self.db = db
        self.use_transactions = use_transactions
        self.items = MongoItemRepository(db)
        self.loans = MongoLoanRepository(db)
        self.reservations = MongoReservationRepository(db)
        self.notifications = MongoNotificationLog(db)

    def ensure_indexes(self) -> None:
        self.loans.collection.create_index([("item_id", ASCENDING), ("status", ASCENDING)])
        self.loans.collection.create_index("borrower_id")
        self.reservations.collection.create_index([("item_id", ASCENDING), ("status", ASCENDING)])
        self.reservations.collection.create_index("borrower_id")

    def _write(self, items, loans, reservations, session=None) -> None:
        for item in items:
            self.items.save_versioned(item, session=session)
        for loan in loans:
            self.loans.save(loan, session=session)
        for reservation in reservations:
            self.reservations.save(reservation, session=session)

    def _write_compensated(self, items, loans, reservations) -> None:
        """
        Write documents one by one, items first. If any write fails, the
        documents already written are put back the way they were before the
        error is re-raised.
        """
        undo = []
        try:
            for item in items:
                previous = self.items.collection.find_one({"_id": item.id})
                self.items.save_versioned(item)
                undo.append((self.items.collection, {"_id": item.id, "version": item.version}, previous))
            for repo, entities in ((self.loans, loans), (self.reservations, reservations)):
                for entity in entities:
                    previous = repo.collection.find_one({"_id": entity.id})
                    repo.save(entity)
                    undo.append((repo.collection, {"_id": entity.id}, previous))
        except Exception:
            self._rollback(undo)
            raise

    def _rollback(self, undo) -> None:
        for collection, filter_dict, previous in reversed(undo):
            try:
                if previous is None:
                    collection.delete_one(filter_dict)
                else:
                    collection.replace_one(filter_dict, previous)
            except PyMongoError:
                logger.exception("could not restore %s %s", collection.name, filter_dict["_id"])

    def commit(self, items=(), loans=(), reservations=()) -> None:
        items, loans, reservations = list(items), list(loans), list(reservations)
        if not self.use_transactions:
            self._write_compensated(items, loans, reservations)
            return
        with self.db.client.start_session() as session:
            session.with_transaction(lambda s: self._write(items, loans, reservations, s))


def build_store() -> Optional[MongoStore]:
    db = get_database()
    if db is None:
        return None
    store = MongoStore(db, use_transactions=os.getenv("DATABASE_TRANSACTIONS", "false").lower() == "true")
    store.ensure_indexes()
    logger.info("using MongoDB database %s", db.name)
    return store
