"""Tests for the order state machines."""

import itertools

import pytest

from app.aggregate import (
    OrderStatus,
    PaymentStatus,
    can_transition_payment,
    can_transition_status,
    payment_transition_error,
    status_transition_error,
)
from app.results import ErrorCode

LEGAL_STATUS = {
    (OrderStatus.PENDING, OrderStatus.PROCESSING),
    (OrderStatus.PENDING, OrderStatus.CANCELLED),
    (OrderStatus.PROCESSING, OrderStatus.COMPLETED),
}

LEGAL_PAYMENT = {
    (PaymentStatus.PENDING, PaymentStatus.PAID),
    (PaymentStatus.PENDING, PaymentStatus.CANCELLED),
    (PaymentStatus.PAID, PaymentStatus.REFUNDED),
}


@pytest.mark.parametrize("current,target", list(itertools.product(OrderStatus, OrderStatus)))
def test_status_transitions(current, target):
    legal = (current, target) in LEGAL_STATUS
    assert can_transition_status(current, target) is legal
    error = status_transition_error(current, target)
    if legal:
        assert error is None
    else:
        assert error.code == ErrorCode.INVALID_TRANSITION
        assert error.detail == {"axis": "status", "from": current.value, "to": target.value}


@pytest.mark.parametrize("current,target", list(itertools.product(PaymentStatus, PaymentStatus)))
def test_payment_transitions(current, target):
    legal = (current, target) in LEGAL_PAYMENT
    assert can_transition_payment(current, target) is legal
    assert (payment_transition_error(current, target) is None) is legal


def test_named_illegal_transitions():
    assert status_transition_error(OrderStatus.COMPLETED, OrderStatus.PENDING) is not None
    assert payment_transition_error(PaymentStatus.CANCELLED, PaymentStatus.PAID) is not None
    assert payment_transition_error(PaymentStatus.REFUNDED, PaymentStatus.PAID) is not None
