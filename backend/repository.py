"""
Persistence collaborator used by the lending engine.

Repository is the contract: every write is a single atomic check-and-write.
Implementations must guarantee that

* a trust edge is unique per (truster, trustee) and set by upsert,
* at most one pending trust request exists per (requester, target),
* at most one active loan exists per item,
* status changes only apply while the stored status still equals the
  expected one (a lost race returns None rather than overwriting).

MongoRepository (database.py) relies on unique indexes for this;
InMemoryRepository does every check-and-write without yielding to the event
loop, which serializes them within one process.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from bson import ObjectId

from errors import Conflict, DuplicatePending, ItemAlreadyOnLoan
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


class Repository(ABC):
    @abstractmethod
    async def ping(self) -> bool: ...

    # users

    @abstractmethod
    async def insert_user(self, user: User) -> User: ...

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    async def get_user_by_email(self, email: str) -> Optional[User]: ...

    @abstractmethod
    async def get_users(self, user_ids: List[str]) -> Dict[str, User]: ...

    @abstractmethod
    async def search_users(self, query: str, limit: int = 20) -> List[User]: ...

    @abstractmethod
    async def update_user(self, user_id: str, updates: dict) -> Optional[User]: ...

    # items

    @abstractmethod
    async def insert_item(self, item: Item) -> Item: ...

    @abstractmethod
    async def get_item(self, item_id: str) -> Optional[Item]: ...

    @abstractmethod
    async def get_items(self, item_ids: List[str]) -> Dict[str, Item]: ...

    @abstractmethod
    async def list_items(self, owner_id: Optional[str] = None, exclude_owner_id: Optional[str] = None,
                         include_hidden: bool = True) -> List[Item]: ...

    @abstractmethod
    async def update_item(self, item_id: str, owner_id: str, updates: dict) -> Optional[Item]: ...

    @abstractmethod
    async def delete_item(self, item_id: str, owner_id: str) -> bool: ...

    # trust edges

    @abstractmethod
    async def upsert_trust(self, truster_id: str, trustee_id: str, level: int) -> TrustEdge: ...

    @abstractmethod
    async def get_trust_edge(self, truster_id: str, trustee_id: str) -> Optional[TrustEdge]: ...

    @abstractmethod
    async def list_trust_edges(self, truster_id: Optional[str] = None,
                               trustee_id: Optional[str] = None) -> List[TrustEdge]: ...

    # trust requests

    @abstractmethod
    async def insert_trust_request(self, request: TrustRequest) -> TrustRequest:
        """Insert a pending request; DuplicatePending if one is already pending for the pair."""

    @abstractmethod
    async def get_trust_request(self, request_id: str) -> Optional[TrustRequest]: ...

    @abstractmethod
    async def list_trust_requests(self, requester_id: Optional[str] = None, target_id: Optional[str] = None,
                                  status: Optional[RequestStatus] = None) -> List[TrustRequest]: ...

    @abstractmethod
    async def transition_trust_request(self, request_id: str, from_status: RequestStatus,
                                       to_status: RequestStatus) -> Optional[TrustRequest]: ...

    @abstractmethod
    async def resolve_pending_trust_requests(self, requester_id: str, target_id: str,
                                             to_status: RequestStatus) -> int: ...

    # loan requests

    @abstractmethod
    async def insert_loan_request(self, request: LoanRequest) -> LoanRequest: ...

    @abstractmethod
    async def get_loan_request(self, request_id: str) -> Optional[LoanRequest]: ...

    @abstractmethod
    async def list_loan_requests(self, borrower_id: Optional[str] = None, owner_id: Optional[str] = None,
                                 item_id: Optional[str] = None,
                                 status: Optional[RequestStatus] = None) -> List[LoanRequest]: ...

    @abstractmethod
    async def transition_loan_request(self, request_id: str, from_status: RequestStatus,
                                      to_status: RequestStatus) -> Optional[LoanRequest]: ...

    # loans

    @abstractmethod
    async def insert_active_loan(self, loan: Loan) -> Loan:
        """Insert an active loan; ItemAlreadyOnLoan if the item already has one."""

    @abstractmethod
    async def get_loan(self, loan_id: str) -> Optional[Loan]: ...

    @abstractmethod
    async def find_active_loan(self, item_id: str) -> Optional[Loan]: ...

    @abstractmethod
    async def list_loans(self, borrower_id: Optional[str] = None, lender_id: Optional[str] = None,
                         item_id: Optional[str] = None, status: Optional[LoanStatus] = None) -> List[Loan]: ...

    @abstractmethod
    async def transition_loan(self, loan_id: str, from_status: LoanStatus, to_status: LoanStatus,
                              updates: Optional[dict] = None) -> Optional[Loan]: ...

    @abstractmethod
    async def update_loan_notes(self, loan_id: str, notes: Optional[str]) -> Optional[Loan]: ...

    @abstractmethod
    async def delete_loan(self, loan_id: str) -> bool: ...


def _newest_first(docs):
    return sorted(docs, key=lambda d: d.created_at or datetime.min, reverse=True)


def _stamp(model, now=None):
    now = now or datetime.utcnow()
    return model.model_copy(update={"id": str(ObjectId()), "created_at": now, "updated_at": now})


class InMemoryRepository(Repository):
    """Process-local repository for tests and database-less runs."""

    def __init__(self):
        self.users: Dict[str, User] = {}
        self.items: Dict[str, Item] = {}
        self.trust: Dict[tuple, TrustEdge] = {}
        self.trust_requests: Dict[str, TrustRequest] = {}
        self.loan_requests: Dict[str, LoanRequest] = {}
        self.loans: Dict[str, Loan] = {}

    async def ping(self):
        return True

    # users

    async def insert_user(self, user):
        if await self.get_user_by_email(user.email) is not None:
            raise Conflict("Email already registered", {"email": user.email})
        user = _stamp(user)
        self.users[user.id] = user
        return user

    async def get_user(self, user_id):
        return self.users.get(user_id)

    async def get_user_by_email(self, email):
        email = email.lower()
        return next((u for u in self.users.values() if u.email.lower() == email), None)

    async def get_users(self, user_ids):
        return {uid: self.users[uid] for uid in user_ids if uid in self.users}

    async def search_users(self, query, limit=20):
        q = query.lower()
        hits = [u for u in self.users.values() if q in u.name.lower() or q in u.email.lower()]
        return hits[:limit]

    async def update_user(self, user_id, updates):
        user = self.users.get(user_id)
        if user is None:
            return None
        user = user.model_copy(update={**updates, "updated_at": datetime.utcnow()})
        self.users[user_id] = user
        return user

    # items

    async def insert_item(self, item):
        item = _stamp(item)
        self.items[item.id] = item
        return item

    async def get_item(self, item_id):
        return self.items.get(item_id)

    async def get_items(self, item_ids):
        return {iid: self.items[iid] for iid in item_ids if iid in self.items}

    async def list_items(self, owner_id=None, exclude_owner_id=None, include_hidden=True):
        items = [
            i for i in self.items.values()
            if (owner_id is None or i.owner_id == owner_id)
            and (exclude_owner_id is None or i.owner_id != exclude_owner_id)
            and (include_hidden or not i.hidden)
        ]
        return _newest_first(items)

    async def update_item(self, item_id, owner_id, updates):
        item = self.items.get(item_id)
        if item is None or item.owner_id != owner_id:
            return None
        item = item.model_copy(update={**updates, "updated_at": datetime.utcnow()})
        self.items[item_id] = item
        return item

    async def delete_item(self, item_id, owner_id):
        item = self.items.get(item_id)
        if item is None or item.owner_id != owner_id:
            return False
        del self.items[item_id]
        return True

    # trust edges

    async def upsert_trust(self, truster_id, trustee_id, level):
        now = datetime.utcnow()
        existing = self.trust.get((truster_id, trustee_id))
        edge = TrustEdge(
            truster_id=truster_id,
            trustee_id=trustee_id,
            level=level,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        self.trust[(truster_id, trustee_id)] = edge
        return edge

    async def get_trust_edge(self, truster_id, trustee_id):
        return self.trust.get((truster_id, trustee_id))

    async def list_trust_edges(self, truster_id=None, trustee_id=None):
        edges = [
            e for e in self.trust.values()
            if (truster_id is None or e.truster_id == truster_id)
            and (trustee_id is None or e.trustee_id == trustee_id)
        ]
        return sorted(edges, key=lambda e: e.updated_at, reverse=True)

    # trust requests

    async def insert_trust_request(self, request):
        for existing in self.trust_requests.values():
            if (existing.requester_id == request.requester_id
                    and existing.target_id == request.target_id
                    and existing.status == RequestStatus.PENDING):
                raise DuplicatePending(
                    "A trust request is already pending for this user",
                    {"request_id": existing.id},
                )
        request = _stamp(request)
        self.trust_requests[request.id] = request
        return request

    async def get_trust_request(self, request_id):
        return self.trust_requests.get(request_id)

    async def list_trust_requests(self, requester_id=None, target_id=None, status=None):
        reqs = [
            r for r in self.trust_requests.values()
            if (requester_id is None or r.requester_id == requester_id)
            and (target_id is None or r.target_id == target_id)
            and (status is None or r.status == status)
        ]
        return _newest_first(reqs)

    async def transition_trust_request(self, request_id, from_status, to_status):
        req = self.trust_requests.get(request_id)
        if req is None or req.status != from_status:
            return None
        req = req.model_copy(update={"status": to_status, "updated_at": datetime.utcnow()})
        self.trust_requests[request_id] = req
        return req

    async def resolve_pending_trust_requests(self, requester_id, target_id, to_status):
        count = 0
        for req in list(self.trust_requests.values()):
            if (req.requester_id == requester_id and req.target_id == target_id
                    and req.status == RequestStatus.PENDING):
                self.trust_requests[req.id] = req.model_copy(
                    update={"status": to_status, "updated_at": datetime.utcnow()}
                )
                count += 1
        return count

    # loan requests

    async def insert_loan_request(self, request):
        request = _stamp(request)
        self.loan_requests[request.id] = request
        return request

    async def get_loan_request(self, request_id):
        return self.loan_requests.get(request_id)

    async def list_loan_requests(self, borrower_id=None, owner_id=None, item_id=None, status=None):
        reqs = [
            r for r in self.loan_requests.values()
            if (borrower_id is None or r.borrower_id == borrower_id)
            and (owner_id is None or r.owner_id == owner_id)
            and (item_id is None or r.item_id == item_id)
            and (status is None or r.status == status)
        ]
        return _newest_first(reqs)

    async def transition_loan_request(self, request_id, from_status, to_status):
        req = self.loan_requests.get(request_id)
        if req is None or req.status != from_status:
            return None
        req = req.model_copy(update={"status": to_status, "updated_at": datetime.utcnow()})
        self.loan_requests[request_id] = req
        return req

    # loans

    async def insert_active_loan(self, loan):
        active = await self.find_active_loan(loan.item_id)
        if active is not None:
            raise ItemAlreadyOnLoan("Item is already on loan", {"item_id": loan.item_id, "loan_id": active.id})
        loan = _stamp(loan.model_copy(update={"status": LoanStatus.ACTIVE}))
        self.loans[loan.id] = loan
        return loan

    async def get_loan(self, loan_id):
        return self.loans.get(loan_id)

    async def find_active_loan(self, item_id):
        return next(
            (l for l in self.loans.values() if l.item_id == item_id and l.status == LoanStatus.ACTIVE),
            None,
        )

    async def list_loans(self, borrower_id=None, lender_id=None, item_id=None, status=None):
        loans = [
            l for l in self.loans.values()
            if (borrower_id is None or l.borrower_id == borrower_id)
            and (lender_id is None or l.lender_id == lender_id)
            and (item_id is None or l.item_id == item_id)
            and (status is None or l.status == status)
        ]
        return _newest_first(loans)

    async def transition_loan(self, loan_id, from_status, to_status, updates=None):
        loan = self.loans.get(loan_id)
        if loan is None or loan.status != from_status:
            return None
        loan = loan.model_copy(update={**(updates or {}), "status": to_status, "updated_at": datetime.utcnow()})
        self.loans[loan_id] = loan
        return loan

    async def update_loan_notes(self, loan_id, notes):
        loan = self.loans.get(loan_id)
        if loan is None:
            return None
        loan = loan.model_copy(update={"notes": notes, "updated_at": datetime.utcnow()})
        self.loans[loan_id] = loan
        return loan

    async def delete_loan(self, loan_id):
        return self.loans.pop(loan_id, None) is not None
