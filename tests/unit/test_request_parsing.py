"""Tests for purchase request validation."""

import pytest

from app import errors
from app.commands import SINGLE_UNIT_MESSAGE, parse_create_order
from app.models import PaymentMethod


def test_defaults_to_cash_on_delivery():
    request = parse_create_order({"product_id": "prod-1", "quantity": 1})

    assert request.payment_method is PaymentMethod.CASH_ON_DELIVERY
    assert request.shipping_address is None


def test_extra_price_fields_are_dropped():
    request = parse_create_order({"product_id": "p", "quantity": 1, "total_amount": 1})

    assert not hasattr(request, "total_amount")


@pytest.mark.parametrize("quantity", [0, 2, 100, -1, "1", 1.5, 2.0, True, False, None, [1]])
def test_quantity_must_be_exactly_one(quantity):
    with pytest.raises(errors.InvalidArgument) as exc_info:
        parse_create_order({"product_id": "prod-1", "quantity": quantity})

    assert exc_info.value.message == SINGLE_UNIT_MESSAGE


def test_integral_float_quantity_is_one():
    request = parse_create_order({"product_id": "prod-1", "quantity": 1.0})

    assert request.quantity == 1
    assert type(request.quantity) is int


def test_quantity_is_required():
    with pytest.raises(errors.InvalidArgument) as exc_info:
        parse_create_order({"product_id": "prod-1"})

    assert exc_info.value.message == SINGLE_UNIT_MESSAGE


@pytest.mark.parametrize("method", ["card", "COD", "", None, 3])
def test_unknown_payment_method(method):
    with pytest.raises(errors.InvalidArgument) as exc_info:
        parse_create_order({"product_id": "prod-1", "quantity": 1, "payment_method": method})

    assert exc_info.value.message == "Invalid payment method"
    assert exc_info.value.status_code == 400


@pytest.mark.parametrize("body", [{"quantity": 1}, {"product_id": "", "quantity": 1}])
def test_product_id_is_required(body):
    with pytest.raises(errors.InvalidArgument) as exc_info:
        parse_create_order(body)

    assert exc_info.value.message == "product_id is required"


@pytest.mark.parametrize("body", [None, [], "prod-1", 1])
def test_body_must_be_an_object(body):
    with pytest.raises(errors.InvalidArgument) as exc_info:
        parse_create_order(body)

    assert exc_info.value.message == "Invalid request body"


def test_shipping_address_must_be_text():
    with pytest.raises(errors.InvalidArgument) as exc_info:
        parse_create_order({"product_id": "p", "quantity": 1, "shipping_address": ["x"]})

    assert exc_info.value.message == "Invalid request body"
