from enum import Enum
from typing import Dict, FrozenSet, Optional
from pydantic import BaseModel, EmailStr, Field
from datetime import datetime

from errors import AlreadyReturned, IllegalTransition, InvalidLevel

# Each class name lowercased corresponds to collection name

MIN_TRUST_LEVEL = 1
MAX_TRUST_LEVEL = 5


def validate_level(level, field: str = "level") -> int:
    """Return level as an int, raising InvalidLevel unless it is an integer within 1..5."""
    if isinstance(level, float) and level.is_integer():
        level = int(level)
    elif isinstance(level, str) and level.strip().lstrip("+-").isdigit():
        level = int(level)
    if isinstance(level, bool) or not isinstance(level, int):
        raise InvalidLevel(f"{field} must be an integer", {field: level})
    if not MIN_TRUST_LEVEL <= level <= MAX_TRUST_LEVEL:
        raise InvalidLevel(
            f"{field} must be between {MIN_TRUST_LEVEL} and {MAX_TRUST_LEVEL}",
            {field: level},
        )
    return level


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class LoanStatus(str, Enum):
    ACTIVE = "active"
    RETURNED = "returned"
    # derived at read time, never stored
    OVERDUE = "overdue"


REQUEST_TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({RequestStatus.APPROVED, RequestStatus.DENIED}),
    RequestStatus.APPROVED: frozenset(),
    RequestStatus.DENIED: frozenset(),
}

LOAN_TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
    LoanStatus.ACTIVE: frozenset({LoanStatus.RETURNED}),
    LoanStatus.RETURNED: frozenset(),
}


def check_request_transition(kind: str, current: RequestStatus, new: RequestStatus) -> None:
    if new not in REQUEST_TRANSITIONS[RequestStatus(current)]:
        raise IllegalTransition(
            f"{kind} is already {RequestStatus(current).value}",
            {"status": RequestStatus(current).value, "requested": RequestStatus(new).value},
        )


def check_loan_transition(current: LoanStatus, new: LoanStatus) -> None:
    current = LoanStatus(current)
    if new in LOAN_TRANSITIONS.get(current, frozenset()):
        return
    if current == LoanStatus.RETURNED:
        raise AlreadyReturned("Loan has already been returned", {"status": current.value})
    raise IllegalTransition(
        f"Loan cannot move from {current.value} to {LoanStatus(new).value}",
        {"status": current.value, "requested": LoanStatus(new).value},
    )


class User(BaseModel):
    id: Optional[str] = None
    name: str
    email: EmailStr
    password: Optional[str] = None  # hashed
    avatar_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UserSummary(BaseModel):
    """Public view of a user; never carries email or trust."""
    id: str
    name: str
    avatar_url: Optional[str] = None

    @classmethod
    def from_user(cls, user: Optional[User], user_id: str) -> "UserSummary":
        if user is None:
            return cls(id=user_id, name="Unknown user")
        return cls(id=user.id, name=user.name, avatar_url=user.avatar_url)


class Item(BaseModel):
    id: Optional[str] = None
    title: str
    description: str = ""
    category: str
    owner_id: str
    required_trust_level: int = Field(ge=MIN_TRUST_LEVEL, le=MAX_TRUST_LEVEL)
    hidden: bool = False
    image_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def matches(self, query: str) -> bool:
        q = query.lower()
        return (
            q in self.title.lower()
            or q in (self.description or "").lower()
            or q in self.category.lower()
        )


class ItemWithOwnerSummary(BaseModel):
    item: Item
    owner: UserSummary


class TrustEdge(BaseModel):
    truster_id: str
    trustee_id: str
    level: int = Field(ge=MIN_TRUST_LEVEL, le=MAX_TRUST_LEVEL)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Connection(BaseModel):
    trustee: UserSummary
    level: int
    updated_at: Optional[datetime] = None


class TrustRequest(BaseModel):
    id: Optional[str] = None
    requester_id: str
    target_id: str
    status: RequestStatus = RequestStatus.PENDING
    message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class LoanRequest(BaseModel):
    id: Optional[str] = None
    item_id: str
    borrower_id: str
    owner_id: str
    requested_start_date: datetime
    requested_end_date: datetime
    status: RequestStatus = RequestStatus.PENDING
    message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Loan(BaseModel):
    id: Optional[str] = None
    item_id: str
    borrower_id: str
    lender_id: str
    loan_request_id: Optional[str] = None
    start_date: datetime
    expected_end_date: datetime
    actual_end_date: Optional[datetime] = None
    status: LoanStatus = LoanStatus.ACTIVE
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def current_status(self, now: Optional[datetime] = None) -> LoanStatus:
        """Stored status, with active loans past their end date reported as overdue."""
        if self.status == LoanStatus.ACTIVE:
            now = now or datetime.utcnow()
            if now > self.expected_end_date:
                return LoanStatus.OVERDUE
        return LoanStatus(self.status)


class AccessAction(str, Enum):
    LOGIN = "login"
    REQUEST_TRUST = "request_trust"
    INSUFFICIENT_TRUST = "insufficient_trust"
    VIEW = "view"


class AccessDecision(BaseModel):
    action: AccessAction
    item_id: str
    owner_id: Optional[str] = None
    # scanner's own level only, set for insufficient_trust
    required_level: Optional[int] = None
    current_level: Optional[int] = None
    item: Optional[ItemWithOwnerSummary] = None
    message: Optional[str] = None


class LoanView(BaseModel):
    """Loan with its derived status and the counterpart's public summary."""
    loan: Loan
    status: LoanStatus
    item_title: Optional[str] = None
    counterpart: UserSummary


class LoanRequestView(BaseModel):
    request: LoanRequest
    item_title: Optional[str] = None
    borrower: UserSummary
    owner: UserSummary
