from datetime import datetime, timedelta, timezone

import pytest

from errors import (
    AlreadyTerminal,
    Conflict,
    IllegalTransition,
    InvalidInput,
    InvalidRange,
    ItemNotVisible,
    NotFound,
    Unauthorized,
)
from schemas import LoanStatus, RequestStatus

JAN_1 = datetime(2024, 1, 1)
JAN_5 = datetime(2024, 1, 5)


@pytest.fixture
def lending_circle(engine, make_user, make_item):
    async def _setup(level=1, trust=3):
        owner = await make_user("Olive")
        borrower = await make_user("Victor")
        item = await make_item(owner, level=level)
        await engine.trust.set_trust(owner.id, borrower.id, trust)
        return owner, borrower, item
    return _setup


async def test_round_trip(engine, make_user, make_item):
    owner = await make_user("Olive")
    viewer = await make_user("Victor")
    item = await make_item(owner, level=3)

    await engine.trust.set_trust(owner.id, viewer.id, 2)
    assert item.id not in {e.item.id for e in await engine.visibility.visible_items(viewer.id)}
    await engine.trust.set_trust(owner.id, viewer.id, 3)
    assert item.id in {e.item.id for e in await engine.visibility.visible_items(viewer.id)}

    req = await engine.loan_requests.create(viewer.id, item.id, JAN_1, JAN_5)
    loan = await engine.loan_requests.approve(req.id, owner.id)

    active = await engine.loans.active_loan_for(item.id)
    assert active.id == loan.id
    assert active.start_date == JAN_1
    assert active.expected_end_date == JAN_5
    assert active.status == LoanStatus.ACTIVE
    assert active.lender_id == owner.id
    assert active.loan_request_id == req.id

    returned = await engine.loans.mark_returned(loan.id, owner.id)
    assert returned.status == LoanStatus.RETURNED
    assert await engine.loans.active_loan_for(item.id) is None


async def test_request_requires_visibility(engine, make_user, make_item):
    owner = await make_user("Olive")
    stranger = await make_user("Sam")
    item = await make_item(owner, level=1)

    with pytest.raises(ItemNotVisible):
        await engine.loan_requests.create(stranger.id, item.id, JAN_1, JAN_5)
    with pytest.raises(ItemNotVisible):
        await engine.loan_requests.create(owner.id, item.id, JAN_1, JAN_5)
    with pytest.raises(NotFound):
        await engine.loan_requests.create(stranger.id, "missing", JAN_1, JAN_5)


async def test_request_requires_start_before_end(engine, lending_circle):
    _, borrower, item = await lending_circle()
    for start, end in ((JAN_5, JAN_1), (JAN_1, JAN_1)):
        with pytest.raises(InvalidRange):
            await engine.loan_requests.create(borrower.id, item.id, start, end)


async def test_second_approval_fails_and_first_loan_stands(engine, make_user, lending_circle):
    owner, first, item = await lending_circle()
    second = await make_user("Wendy")
    await engine.trust.set_trust(owner.id, second.id, 3)

    r1 = await engine.loan_requests.create(first.id, item.id, JAN_1, JAN_5)
    r2 = await engine.loan_requests.create(second.id, item.id, JAN_1, JAN_5)
    loan = await engine.loan_requests.approve(r1.id, owner.id)

    with pytest.raises(Conflict):
        await engine.loan_requests.approve(r2.id, owner.id)

    assert (await engine.loans.active_loan_for(item.id)).id == loan.id
    assert (await engine.repo.get_loan_request(r2.id)).status == RequestStatus.PENDING
    assert len(await engine.repo.list_loans(item_id=item.id)) == 1


async def test_only_owner_can_approve_or_deny(engine, lending_circle):
    owner, borrower, item = await lending_circle()
    req = await engine.loan_requests.create(borrower.id, item.id, JAN_1, JAN_5)

    with pytest.raises(Unauthorized):
        await engine.loan_requests.approve(req.id, borrower.id)
    with pytest.raises(Unauthorized):
        await engine.loan_requests.deny(req.id, borrower.id)

    denied = await engine.loan_requests.deny(req.id, owner.id)
    assert denied.status == RequestStatus.DENIED
    with pytest.raises(AlreadyTerminal):
        await engine.loan_requests.approve(req.id, owner.id)
    assert await engine.loans.active_loan_for(item.id) is None


async def test_approved_request_cannot_be_approved_again(engine, lending_circle):
    owner, borrower, item = await lending_circle()
    req = await engine.loan_requests.create(borrower.id, item.id, JAN_1, JAN_5)
    await engine.loan_requests.approve(req.id, owner.id)

    with pytest.raises(AlreadyTerminal):
        await engine.loan_requests.approve(req.id, owner.id)
    with pytest.raises(AlreadyTerminal):
        await engine.loan_requests.deny(req.id, owner.id)


async def test_lost_race_on_request_withdraws_loan(engine, lending_circle, monkeypatch):
    owner, borrower, item = await lending_circle()
    req = await engine.loan_requests.create(borrower.id, item.id, JAN_1, JAN_5)

    async def already_resolved(*args, **kwargs):
        return None

    monkeypatch.setattr(engine.repo, "transition_loan_request", already_resolved)

    with pytest.raises(IllegalTransition):
        await engine.loan_requests.approve(req.id, owner.id)
    assert await engine.loans.active_loan_for(item.id) is None


async def test_mark_returned_twice(engine, lending_circle):
    owner, borrower, item = await lending_circle()
    loan = await engine.loans.create_direct(owner.id, borrower.id, item.id, JAN_1, JAN_5)

    first = await engine.loans.mark_returned(loan.id, owner.id, datetime(2024, 1, 4))
    assert first.actual_end_date == datetime(2024, 1, 4)

    with pytest.raises(AlreadyTerminal):
        await engine.loans.mark_returned(loan.id, owner.id, datetime(2024, 2, 1))
    assert (await engine.repo.get_loan(loan.id)).actual_end_date == datetime(2024, 1, 4)


async def test_borrower_may_return_but_stranger_may_not(engine, make_user, lending_circle):
    owner, borrower, item = await lending_circle()
    stranger = await make_user("Sam")
    loan = await engine.loans.create_direct(owner.id, borrower.id, item.id, JAN_1, JAN_5)

    with pytest.raises(Unauthorized):
        await engine.loans.mark_returned(loan.id, stranger.id)

    returned = await engine.loans.mark_returned(loan.id, borrower.id)
    assert returned.status == LoanStatus.RETURNED
    assert returned.actual_end_date is not None


async def test_aware_dates_are_stored_as_utc(engine, lending_circle):
    owner, borrower, item = await lending_circle()
    plus_two = timezone(timedelta(hours=2))
    loan = await engine.loans.create_direct(
        owner.id, borrower.id, item.id,
        datetime(2024, 1, 1, 10, tzinfo=plus_two), datetime(2024, 1, 5, 10, tzinfo=plus_two),
    )
    assert loan.start_date == datetime(2024, 1, 1, 8)


async def test_direct_lend_rules(engine, make_user, lending_circle):
    owner, borrower, item = await lending_circle()
    other = await make_user("Wendy")

    with pytest.raises(Unauthorized):
        await engine.loans.create_direct(borrower.id, other.id, item.id, JAN_1, JAN_5)
    with pytest.raises(InvalidInput):
        await engine.loans.create_direct(owner.id, owner.id, item.id, JAN_1, JAN_5)
    with pytest.raises(InvalidRange):
        await engine.loans.create_direct(owner.id, borrower.id, item.id, JAN_5, JAN_1)

    await engine.loans.create_direct(owner.id, borrower.id, item.id, JAN_1, JAN_5)
    with pytest.raises(Conflict):
        await engine.loans.create_direct(owner.id, other.id, item.id, JAN_1, JAN_5)


async def test_item_can_be_lent_again_after_return(engine, lending_circle):
    owner, borrower, item = await lending_circle()
    first = await engine.loans.create_direct(owner.id, borrower.id, item.id, JAN_1, JAN_5)
    await engine.loans.mark_returned(first.id, borrower.id)

    second = await engine.loans.create_direct(owner.id, borrower.id, item.id, datetime(2024, 2, 1), datetime(2024, 2, 3))
    assert (await engine.loans.active_loan_for(item.id)).id == second.id


async def test_overdue_is_derived_at_read_time(engine, lending_circle):
    owner, borrower, item = await lending_circle()
    loan = await engine.loans.create_direct(owner.id, borrower.id, item.id, JAN_1, JAN_5)

    assert loan.current_status(datetime(2024, 1, 3)) == LoanStatus.ACTIVE
    assert loan.current_status(datetime(2024, 1, 6)) == LoanStatus.OVERDUE
    assert (await engine.repo.get_loan(loan.id)).status == LoanStatus.ACTIVE

    overdue = await engine.loans.loans_lent(owner.id, status=LoanStatus.OVERDUE, now=datetime(2024, 1, 6))
    assert [v.loan.id for v in overdue] == [loan.id]
    assert overdue[0].counterpart.name == "Victor"
    assert overdue[0].item_title == item.title
    assert await engine.loans.loans_lent(owner.id, status=LoanStatus.ACTIVE, now=datetime(2024, 1, 6)) == []

    [borrowed] = await engine.loans.loans_borrowed(borrower.id, now=datetime(2024, 1, 2))
    assert borrowed.status == LoanStatus.ACTIVE
    assert borrowed.counterpart.id == owner.id


async def test_returned_loan_is_never_overdue(engine, lending_circle):
    owner, borrower, item = await lending_circle()
    loan = await engine.loans.create_direct(owner.id, borrower.id, item.id, JAN_1, JAN_5)
    returned = await engine.loans.mark_returned(loan.id, owner.id, datetime(2024, 1, 9))
    assert returned.current_status(datetime(2024, 3, 1)) == LoanStatus.RETURNED


async def test_request_inboxes(engine, lending_circle):
    owner, borrower, item = await lending_circle()
    req = await engine.loan_requests.create(borrower.id, item.id, JAN_1, JAN_5, "For the weekend")

    assert [v.request.id for v in await engine.loan_requests.sent(borrower.id)] == [req.id]
    assert [v.request.id for v in await engine.loan_requests.received(owner.id, status=RequestStatus.PENDING)] == [req.id]
    assert [r.id for r in await engine.loan_requests.for_item(item.id, owner.id)] == [req.id]
    with pytest.raises(Unauthorized):
        await engine.loan_requests.for_item(item.id, borrower.id)

    await engine.loan_requests.deny(req.id, owner.id)
    assert await engine.loan_requests.received(owner.id, status=RequestStatus.PENDING) == []


async def test_notes_editable_by_participants(engine, make_user, lending_circle):
    owner, borrower, item = await lending_circle()
    stranger = await make_user("Sam")
    loan = await engine.loans.create_direct(owner.id, borrower.id, item.id, JAN_1, JAN_5, notes="Charger included")
    assert loan.notes == "Charger included"

    updated = await engine.loans.update_notes(loan.id, borrower.id, "Charger returned early")
    assert updated.notes == "Charger returned early"
    with pytest.raises(Unauthorized):
        await engine.loans.update_notes(loan.id, stranger.id, "hi")


async def test_request_inboxes_join_item_and_people(engine, lending_circle):
    owner, borrower, item = await lending_circle()
    req = await engine.loan_requests.create(borrower.id, item.id, JAN_1, JAN_5)

    [view] = await engine.loan_requests.received(owner.id)
    assert view.request.id == req.id
    assert view.item_title == "Cordless drill"
    assert view.borrower.id == borrower.id
    assert view.borrower.name == "Victor"
    assert view.owner.name == "Olive"

    [sent] = await engine.loan_requests.sent(borrower.id)
    assert sent.owner.id == owner.id


async def test_return_of_vanished_loan_is_not_found(engine, lending_circle, monkeypatch):
    owner, borrower, item = await lending_circle()
    loan = await engine.loans.create_direct(owner.id, borrower.id, item.id, JAN_1, JAN_5)

    async def removed_meanwhile(*args, **kwargs):
        await engine.repo.delete_loan(loan.id)
        return None

    monkeypatch.setattr(engine.repo, "transition_loan", removed_meanwhile)

    with pytest.raises(NotFound):
        await engine.loans.mark_returned(loan.id, owner.id)
