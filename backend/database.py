import re
from datetime import datetime
from typing import Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from config import DATABASE_URL, DATABASE_NAME
from errors import Conflict, DuplicatePending, ItemAlreadyOnLoan
from logger import get_logger
from repository import Repository
from schemas import (
    Item,
    Loan,
    LoanRequest,
    LoanStatus,
    RequestStatus,
    TrustEdge,
    TrustRequest,
    User,
)

logger = get_logger("trustshelf.database")

_client: AsyncIOMotorClient | None = None
_db = None


async def get_db():
    global _client, _db
    if _client is None:
        _client = AsyncIOMotorClient(DATABASE_URL)
        _db = _client[DATABASE_NAME]
    return _db


async def ensure_indexes():
    """Unique indexes backing every atomic check-and-write of the engine."""
    db = await get_db()
    await db["user"].create_index("email", unique=True)
    await db["trustedge"].create_index(
        [("truster_id", ASCENDING), ("trustee_id", ASCENDING)], unique=True
    )
    await db["trustedge"].create_index("trustee_id")
    await db["trustrequest"].create_index(
        [("requester_id", ASCENDING), ("target_id", ASCENDING)],
        unique=True,
        partialFilterExpression={"status": RequestStatus.PENDING.value},
        name="one_pending_trust_request",
    )
    await db["loanrequest"].create_index("owner_id")
    await db["loan"].create_index(
        "item_id",
        unique=True,
        partialFilterExpression={"status": LoanStatus.ACTIVE.value},
        name="one_active_loan_per_item",
    )
    logger.info("indexes ensured")


async def create_document(collection_name: str, data: dict):
    db = await get_db()
    now = datetime.utcnow()
    data["created_at"] = now
    data["updated_at"] = now
    res = await db[collection_name].insert_one(data)
    data["_id"] = res.inserted_id
    return data


async def get_documents(collection_name: str, filter_dict: dict | None = None, limit: int | None = None):
    db = await get_db()
    cursor = db[collection_name].find(filter_dict or {}).sort("created_at", -1)
    if limit:
        cursor = cursor.limit(limit)
    return [doc async for doc in cursor]


def _oid(value: str) -> Optional[ObjectId]:
    return ObjectId(value) if ObjectId.is_valid(value) else None


def _map_doc(model, doc):
    if doc is None:
        return None
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return model(**doc)


def _dump(model) -> dict:
    data = model.model_dump(mode="python", exclude={"id", "created_at", "updated_at"})
    for key, value in data.items():
        if hasattr(value, "value"):
            data[key] = value.value
    return data


def _filters(**kwargs) -> dict:
    out = {}
    for key, value in kwargs.items():
        if value is None:
            continue
        out[key] = value.value if hasattr(value, "value") else value
    return out


class MongoRepository(Repository):
    """Repository over MongoDB; atomicity comes from the indexes in ensure_indexes()."""

    async def ping(self):
        db = await get_db()
        await db.command("ping")
        return True

    async def _find_one(self, collection: str, model, query: dict):
        db = await get_db()
        return _map_doc(model, await db[collection].find_one(query))

    async def _find_by_id(self, collection: str, model, doc_id: str):
        oid = _oid(doc_id)
        if oid is None:
            return None
        return await self._find_one(collection, model, {"_id": oid})

    async def _transition(self, collection: str, model, doc_id: str, from_status, to_status, updates=None):
        oid = _oid(doc_id)
        if oid is None:
            return None
        db = await get_db()
        changes = {**(updates or {}), "status": to_status.value, "updated_at": datetime.utcnow()}
        doc = await db[collection].find_one_and_update(
            {"_id": oid, "status": from_status.value},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        return _map_doc(model, doc)

    # users

    async def insert_user(self, user):
        try:
            doc = await create_document("user", _dump(user))
        except DuplicateKeyError:
            raise Conflict("Email already registered", {"email": user.email})
        return _map_doc(User, doc)

    async def get_user(self, user_id):
        return await self._find_by_id("user", User, user_id)

    async def get_user_by_email(self, email):
        return await self._find_one("user", User, {"email": email.lower()})

    async def get_users(self, user_ids):
        oids = [oid for oid in (_oid(u) for u in user_ids) if oid is not None]
        docs = await get_documents("user", {"_id": {"$in": oids}})
        users = [_map_doc(User, d) for d in docs]
        return {u.id: u for u in users}

    async def search_users(self, query, limit=20):
        pattern = {"$regex": re.escape(query), "$options": "i"}
        docs = await get_documents("user", {"$or": [{"name": pattern}, {"email": pattern}]}, limit=limit)
        return [_map_doc(User, d) for d in docs]

    async def update_user(self, user_id, updates):
        oid = _oid(user_id)
        if oid is None:
            return None
        db = await get_db()
        doc = await db["user"].find_one_and_update(
            {"_id": oid},
            {"$set": {**updates, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return _map_doc(User, doc)

    # items

    async def insert_item(self, item):
        doc = await create_document("item", _dump(item))
        return _map_doc(Item, doc)

    async def get_item(self, item_id):
        return await self._find_by_id("item", Item, item_id)

    async def get_items(self, item_ids):
        oids = [oid for oid in (_oid(i) for i in item_ids) if oid is not None]
        docs = await get_documents("item", {"_id": {"$in": oids}})
        items = [_map_doc(Item, d) for d in docs]
        return {i.id: i for i in items}

    async def list_items(self, owner_id=None, exclude_owner_id=None, include_hidden=True):
        flt = _filters(owner_id=owner_id)
        if exclude_owner_id is not None:
            flt["owner_id"] = {"$ne": exclude_owner_id}
        if not include_hidden:
            flt["hidden"] = {"$ne": True}
        docs = await get_documents("item", flt)
        return [_map_doc(Item, d) for d in docs]

    async def update_item(self, item_id, owner_id, updates):
        oid = _oid(item_id)
        if oid is None:
            return None
        db = await get_db()
        doc = await db["item"].find_one_and_update(
            {"_id": oid, "owner_id": owner_id},
            {"$set": {**updates, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return _map_doc(Item, doc)

    async def delete_item(self, item_id, owner_id):
        oid = _oid(item_id)
        if oid is None:
            return False
        db = await get_db()
        res = await db["item"].delete_one({"_id": oid, "owner_id": owner_id})
        return res.deleted_count > 0

    # trust edges

    async def upsert_trust(self, truster_id, trustee_id, level):
        db = await get_db()
        now = datetime.utcnow()
        doc = await db["trustedge"].find_one_and_update(
            {"truster_id": truster_id, "trustee_id": trustee_id},
            {"$set": {"level": level, "updated_at": now}, "$setOnInsert": {"created_at": now}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        doc.pop("_id", None)
        return TrustEdge(**doc)

    async def get_trust_edge(self, truster_id, trustee_id):
        db = await get_db()
        doc = await db["trustedge"].find_one({"truster_id": truster_id, "trustee_id": trustee_id})
        if doc is None:
            return None
        doc.pop("_id", None)
        return TrustEdge(**doc)

    async def list_trust_edges(self, truster_id=None, trustee_id=None):
        db = await get_db()
        cursor = db["trustedge"].find(_filters(truster_id=truster_id, trustee_id=trustee_id))
        cursor = cursor.sort("updated_at", DESCENDING)
        edges = []
        async for doc in cursor:
            doc.pop("_id", None)
            edges.append(TrustEdge(**doc))
        return edges

    # trust requests

    async def insert_trust_request(self, request):
        try:
            doc = await create_document("trustrequest", _dump(request))
        except DuplicateKeyError:
            raise DuplicatePending(
                "A trust request is already pending for this user",
                {"target_id": request.target_id},
            )
        return _map_doc(TrustRequest, doc)

    async def get_trust_request(self, request_id):
        return await self._find_by_id("trustrequest", TrustRequest, request_id)

    async def list_trust_requests(self, requester_id=None, target_id=None, status=None):
        flt = _filters(requester_id=requester_id, target_id=target_id, status=status)
        docs = await get_documents("trustrequest", flt)
        return [_map_doc(TrustRequest, d) for d in docs]

    async def transition_trust_request(self, request_id, from_status, to_status):
        return await self._transition("trustrequest", TrustRequest, request_id, from_status, to_status)

    async def resolve_pending_trust_requests(self, requester_id, target_id, to_status):
        db = await get_db()
        res = await db["trustrequest"].update_many(
            {"requester_id": requester_id, "target_id": target_id, "status": RequestStatus.PENDING.value},
            {"$set": {"status": to_status.value, "updated_at": datetime.utcnow()}},
        )
        return res.modified_count

    # loan requests

    async def insert_loan_request(self, request):
        doc = await create_document("loanrequest", _dump(request))
        return _map_doc(LoanRequest, doc)

    async def get_loan_request(self, request_id):
        return await self._find_by_id("loanrequest", LoanRequest, request_id)

    async def list_loan_requests(self, borrower_id=None, owner_id=None, item_id=None, status=None):
        flt = _filters(borrower_id=borrower_id, owner_id=owner_id, item_id=item_id, status=status)
        docs = await get_documents("loanrequest", flt)
        return [_map_doc(LoanRequest, d) for d in docs]

    async def transition_loan_request(self, request_id, from_status, to_status):
        return await self._transition("loanrequest", LoanRequest, request_id, from_status, to_status)

    # loans

    async def insert_active_loan(self, loan):
        data = _dump(loan)
        data["status"] = LoanStatus.ACTIVE.value
        try:
            doc = await create_document("loan", data)
        except DuplicateKeyError:
            raise ItemAlreadyOnLoan("Item is already on loan", {"item_id": loan.item_id})
        return _map_doc(Loan, doc)

    async def get_loan(self, loan_id):
        return await self._find_by_id("loan", Loan, loan_id)

    async def find_active_loan(self, item_id):
        return await self._find_one("loan", Loan, {"item_id": item_id, "status": LoanStatus.ACTIVE.value})

    async def list_loans(self, borrower_id=None, lender_id=None, item_id=None, status=None):
        flt = _filters(borrower_id=borrower_id, lender_id=lender_id, item_id=item_id, status=status)
        docs = await get_documents("loan", flt)
        return [_map_doc(Loan, d) for d in docs]

    async def transition_loan(self, loan_id, from_status, to_status, updates=None):
        return await self._transition("loan", Loan, loan_id, from_status, to_status, updates)

    async def update_loan_notes(self, loan_id, notes):
        oid = _oid(loan_id)
        if oid is None:
            return None
        db = await get_db()
        doc = await db["loan"].find_one_and_update(
            {"_id": oid},
            {"$set": {"notes": notes, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return _map_doc(Loan, doc)

    async def delete_loan(self, loan_id):
        oid = _oid(loan_id)
        if oid is None:
            return False
        db = await get_db()
        res = await db["loan"].delete_one({"_id": oid})
        return res.deleted_count > 0
