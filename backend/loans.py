"""
Loan requests and loans.

A loan request targets an item the borrower can currently see and waits
for the owner. Approving it creates the loan; direct lending creates one
without a request. Either way the repository admits at most one active
loan per item, so of two competing approvals the second fails with
ItemAlreadyOnLoan and leaves its request pending.

Overdue is not stored. It is read from Loan.current_status().
"""

from datetime import datetime, timezone
from typing import List, Optional

from errors import (
    IllegalTransition,
    InvalidInput,
    InvalidRange,
    ItemAlreadyOnLoan,
    ItemNotVisible,
    NotFound,
    Unauthorized,
)
from logger import get_logger
from repository import Repository
from schemas import (
    Loan,
    LoanRequest,
    LoanRequestView,
    LoanStatus,
    LoanView,
    RequestStatus,
    UserSummary,
    check_loan_transition,
    check_request_transition,
)
from visibility import VisibilityEngine

logger = get_logger("trustshelf.loans")


def as_utc(value: datetime) -> datetime:
    """Naive UTC datetime, the form stored and compared throughout."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def check_range(start: datetime, end: datetime):
    start, end = as_utc(start), as_utc(end)
    if not start < end:
        raise InvalidRange(
            "Start date must be before end date",
            {"start": start.isoformat(), "end": end.isoformat()},
        )
    return start, end


class LoanLifecycle:
    def __init__(self, repo: Repository):
        self.repo = repo

    async def active_loan_for(self, item_id: str) -> Optional[Loan]:
        return await self.repo.find_active_loan(item_id)

    async def open_loan(self, loan: Loan) -> Loan:
        """Insert an active loan unless the item already has one."""
        try:
            created = await self.repo.insert_active_loan(loan)
        except ItemAlreadyOnLoan:
            logger.warning(f"loan refused item={loan.item_id}: already on loan")
            raise
        logger.info(f"loan opened id={created.id} item={created.item_id} borrower={created.borrower_id}")
        return created

    async def create_direct(self, lender_id: str, borrower_id: str, item_id: str,
                            start: datetime, end: datetime, notes: Optional[str] = None) -> Loan:
        item = await self.repo.get_item(item_id)
        if item is None:
            raise NotFound("Item not found", {"item_id": item_id})
        if item.owner_id != lender_id:
            logger.warning(f"direct lend refused item={item_id} actor={lender_id}")
            raise Unauthorized("Only the owner can lend this item", {"item_id": item_id})
        if borrower_id == lender_id:
            raise InvalidInput("You cannot lend an item to yourself", {"item_id": item_id})
        if await self.repo.get_user(borrower_id) is None:
            raise NotFound("Borrower not found", {"user_id": borrower_id})
        start, end = check_range(start, end)
        return await self.open_loan(Loan(
            item_id=item_id,
            borrower_id=borrower_id,
            lender_id=lender_id,
            start_date=start,
            expected_end_date=end,
            notes=notes or None,
        ))

    async def _participant_loan(self, loan_id: str, actor_id: str) -> Loan:
        loan = await self.repo.get_loan(loan_id)
        if loan is None:
            raise NotFound("Loan not found", {"loan_id": loan_id})
        if actor_id not in (loan.lender_id, loan.borrower_id):
            logger.warning(f"loan write refused id={loan_id} actor={actor_id}")
            raise Unauthorized("Not a participant in this loan", {"loan_id": loan_id})
        return loan

    async def mark_returned(self, loan_id: str, actor_id: str,
                            actual_end_date: Optional[datetime] = None) -> Loan:
        loan = await self._participant_loan(loan_id, actor_id)
        check_loan_transition(loan.status, LoanStatus.RETURNED)
        ended = as_utc(actual_end_date) if actual_end_date else datetime.utcnow()
        returned = await self.repo.transition_loan(
            loan_id, LoanStatus.ACTIVE, LoanStatus.RETURNED, {"actual_end_date": ended}
        )
        if returned is None:
            current = await self.repo.get_loan(loan_id)
            if current is None:
                raise NotFound("Loan not found", {"loan_id": loan_id})
            check_loan_transition(current.status, LoanStatus.RETURNED)
            raise IllegalTransition("Loan is no longer active", {"loan_id": loan_id})
        logger.info(f"loan returned id={loan_id} by={actor_id}")
        return returned

    async def update_notes(self, loan_id: str, actor_id: str, notes: Optional[str]) -> Loan:
        await self._participant_loan(loan_id, actor_id)
        return await self.repo.update_loan_notes(loan_id, notes or None)

    async def _views(self, loans: List[Loan], counterpart_field: str,
                     status: Optional[LoanStatus], now: Optional[datetime]) -> List[LoanView]:
        now = now or datetime.utcnow()
        if status is not None:
            status = LoanStatus(status)
            loans = [l for l in loans if l.current_status(now) == status]
        items = await self.repo.get_items(list({l.item_id for l in loans}))
        users = await self.repo.get_users(list({getattr(l, counterpart_field) for l in loans}))
        views = []
        for loan in loans:
            other_id = getattr(loan, counterpart_field)
            item = items.get(loan.item_id)
            views.append(LoanView(
                loan=loan,
                status=loan.current_status(now),
                item_title=item.title if item else None,
                counterpart=UserSummary.from_user(users.get(other_id), other_id),
            ))
        return views

    async def loans_borrowed(self, user_id: str, status: Optional[LoanStatus] = None,
                             now: Optional[datetime] = None) -> List[LoanView]:
        loans = await self.repo.list_loans(borrower_id=user_id)
        return await self._views(loans, "lender_id", status, now)

    async def loans_lent(self, user_id: str, status: Optional[LoanStatus] = None,
                         now: Optional[datetime] = None) -> List[LoanView]:
        loans = await self.repo.list_loans(lender_id=user_id)
        return await self._views(loans, "borrower_id", status, now)


class LoanRequestWorkflow:
    def __init__(self, repo: Repository, visibility: VisibilityEngine, lifecycle: LoanLifecycle):
        self.repo = repo
        self.visibility = visibility
        self.lifecycle = lifecycle

    async def create(self, borrower_id: str, item_id: str, start: datetime, end: datetime,
                     message: Optional[str] = None) -> LoanRequest:
        item = await self.repo.get_item(item_id)
        if item is None or not await self.visibility.is_visible(borrower_id, item):
            raise ItemNotVisible("Item not found or not accessible", {"item_id": item_id})
        start, end = check_range(start, end)
        req = await self.repo.insert_loan_request(LoanRequest(
            item_id=item_id,
            borrower_id=borrower_id,
            owner_id=item.owner_id,
            requested_start_date=start,
            requested_end_date=end,
            message=message or None,
        ))
        logger.info(f"loan request created id={req.id} item={item_id} borrower={borrower_id}")
        return req

    async def _owned_request(self, request_id: str, actor_id: str):
        req = await self.repo.get_loan_request(request_id)
        if req is None:
            raise NotFound("Loan request not found", {"request_id": request_id})
        item = await self.repo.get_item(req.item_id)
        if item is None:
            raise NotFound("Item not found", {"item_id": req.item_id})
        if item.owner_id != actor_id:
            logger.warning(f"loan request write refused id={request_id} actor={actor_id}")
            raise Unauthorized("Not owner", {"request_id": request_id})
        return req, item

    async def approve(self, request_id: str, actor_id: str) -> Loan:
        req, item = await self._owned_request(request_id, actor_id)
        check_request_transition("Loan request", req.status, RequestStatus.APPROVED)
        # the loan goes in first so a refused loan leaves the request pending
        loan = await self.lifecycle.open_loan(Loan(
            item_id=req.item_id,
            borrower_id=req.borrower_id,
            lender_id=actor_id,
            loan_request_id=req.id,
            start_date=req.requested_start_date,
            expected_end_date=req.requested_end_date,
        ))
        approved = await self.repo.transition_loan_request(request_id, RequestStatus.PENDING, RequestStatus.APPROVED)
        if approved is None:
            await self.repo.delete_loan(loan.id)
            logger.warning(f"loan request approve lost race id={request_id}; loan {loan.id} withdrawn")
            raise IllegalTransition("Loan request is no longer pending", {"request_id": request_id})
        logger.info(f"loan request approved id={request_id} loan={loan.id}")
        return loan

    async def deny(self, request_id: str, actor_id: str) -> LoanRequest:
        req, _ = await self._owned_request(request_id, actor_id)
        check_request_transition("Loan request", req.status, RequestStatus.DENIED)
        denied = await self.repo.transition_loan_request(request_id, RequestStatus.PENDING, RequestStatus.DENIED)
        if denied is None:
            raise IllegalTransition("Loan request is no longer pending", {"request_id": request_id})
        logger.info(f"loan request denied id={request_id}")
        return denied

    async def _views(self, requests: List[LoanRequest]) -> List[LoanRequestView]:
        items = await self.repo.get_items(list({r.item_id for r in requests}))
        users = await self.repo.get_users(list({r.borrower_id for r in requests} | {r.owner_id for r in requests}))
        views = []
        for req in requests:
            item = items.get(req.item_id)
            views.append(LoanRequestView(
                request=req,
                item_title=item.title if item else None,
                borrower=UserSummary.from_user(users.get(req.borrower_id), req.borrower_id),
                owner=UserSummary.from_user(users.get(req.owner_id), req.owner_id),
            ))
        return views

    async def sent(self, borrower_id: str) -> List[LoanRequestView]:
        return await self._views(await self.repo.list_loan_requests(borrower_id=borrower_id))

    async def received(self, owner_id: str, status: Optional[RequestStatus] = None) -> List[LoanRequestView]:
        return await self._views(await self.repo.list_loan_requests(owner_id=owner_id, status=status))

    async def for_item(self, item_id: str, actor_id: str) -> List[LoanRequest]:
        item = await self.repo.get_item(item_id)
        if item is None:
            raise NotFound("Item not found", {"item_id": item_id})
        if item.owner_id != actor_id:
            raise Unauthorized("Not owner", {"item_id": item_id})
        return await self.repo.list_loan_requests(item_id=item_id)
