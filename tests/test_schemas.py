import pytest

from errors import AlreadyReturned, IllegalTransition, InvalidLevel
from schemas import (
    LoanStatus,
    RequestStatus,
    check_loan_transition,
    check_request_transition,
    validate_level,
)


def test_pending_requests_may_resolve_either_way():
    check_request_transition("Loan request", RequestStatus.PENDING, RequestStatus.APPROVED)
    check_request_transition("Loan request", RequestStatus.PENDING, RequestStatus.DENIED)


@pytest.mark.parametrize("current", [RequestStatus.APPROVED, RequestStatus.DENIED])
@pytest.mark.parametrize("new", list(RequestStatus))
def test_resolved_requests_are_terminal(current, new):
    with pytest.raises(IllegalTransition):
        check_request_transition("Trust request", current, new)


def test_loan_transitions():
    check_loan_transition(LoanStatus.ACTIVE, LoanStatus.RETURNED)
    with pytest.raises(AlreadyReturned):
        check_loan_transition(LoanStatus.RETURNED, LoanStatus.RETURNED)
    with pytest.raises(IllegalTransition):
        check_loan_transition(LoanStatus.ACTIVE, LoanStatus.OVERDUE)


def test_validate_level_accepts_numeric_strings():
    assert validate_level("3") == 3
    with pytest.raises(InvalidLevel):
        validate_level(True)


@pytest.mark.parametrize("level", [2.9, 4.5, "2.5", "three", None])
def test_validate_level_rejects_fractional_and_non_numeric(level):
    with pytest.raises(InvalidLevel):
        validate_level(level)


def test_validate_level_accepts_whole_floats():
    assert validate_level(4.0) == 4
