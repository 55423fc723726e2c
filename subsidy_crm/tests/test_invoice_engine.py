"""
Invoice engine tests - totals, status derivation and explicit transitions
"""
from datetime import date, datetime

import pytest

from subsidy_crm.exceptions import ForbiddenError, StateConflictError, ValidationError
from subsidy_crm.models.client import Client
from subsidy_crm.models.invoice import InvoiceStatus
from subsidy_crm.models.user import User, UserRole
from subsidy_crm.services import invoice_engine as engine

NOW = datetime(2024, 3, 1, 9, 30)
TODAY = date(2024, 3, 1)


def make_admin():
    return User(id=1, name="Admin", email="a@x.com", role=UserRole.ADMIN, is_active=True)


def make_client():
    return Client(id=7, client_code="CL-0001", company_name="Acme Foods", email="ops@acme.test",
                  mobile_number="9999999999", gst_no="27AAAAA0000A1Z5")


def make_invoice(**data):
    payload = {"line_items": [{"description": "Consulting fee", "quantity": 1, "unit_price": 10000}],
               "tax_percent": 18, "discount_amount": 500}
    payload.update(data)
    return engine.build_invoice("INV-0001", make_client(), None, make_admin(), payload, NOW, TODAY)


# ===================== PURE COMPUTATION =====================


class TestPureComputation:

    def test_normalize_line_items(self):
        items = engine.normalize_line_items([
            {"description": "  Filing  ", "quantity": "2", "unit_price": "1500.25"},
            {"description": "", "quantity": 5, "unit_price": 100},
            {"description": "Negative", "quantity": -3, "unit_price": -10},
            {"description": "Blank quantity", "quantity": None, "unit_price": 250},
        ])
        assert items == [
            {"description": "Filing", "quantity": 2.0, "unit_price": 1500.25, "amount": 3000.5},
            {"description": "Negative", "quantity": 0, "unit_price": 0, "amount": 0.0},
            {"description": "Blank quantity", "quantity": 1.0, "unit_price": 250.0, "amount": 250.0},
        ]

    def test_calculate_totals(self):
        totals = engine.calculate_totals(
            [{"amount": 10000}], tax_percent=18, discount_amount=500, payments=[{"amount": 3000}],
        )
        assert totals == {
            "sub_total": 10000.0,
            "tax_amount": 1800.0,
            "total_amount": 11300.0,
            "paid_amount": 3000.0,
            "balance_amount": 8300.0,
        }

    def test_half_cent_rounds_up(self):
        items = engine.normalize_line_items([{"description": "Stamp", "quantity": 1, "unit_price": 0.125}])
        assert items[0]["amount"] == 0.13

        totals = engine.calculate_totals([{"amount": 1.25}], tax_percent=50)
        assert totals["tax_amount"] == 0.63
        assert totals["total_amount"] == 1.88

    def test_non_finite_inputs_fall_back_to_defaults(self):
        items = engine.normalize_line_items([
            {"description": "Fee", "quantity": float("inf"), "unit_price": float("nan")},
        ])
        assert items == [{"description": "Fee", "quantity": 1.0, "unit_price": 0.0, "amount": 0.0}]

        totals = engine.calculate_totals([{"amount": 100}], tax_percent="Infinity", discount_amount=float("nan"))
        assert totals["total_amount"] == 100

    def test_total_never_negative(self):
        totals = engine.calculate_totals([{"amount": 100}], tax_percent=0, discount_amount=500)
        assert totals["total_amount"] == 0
        assert totals["balance_amount"] == 0

    @pytest.mark.parametrize("status,total,paid,balance,due,expected", [
        (InvoiceStatus.CANCELLED, 100, 100, 0, None, InvoiceStatus.CANCELLED),
        (InvoiceStatus.DRAFT, 100, 50, 50, None, InvoiceStatus.DRAFT),
        (InvoiceStatus.ISSUED, 100, 100, 0, None, InvoiceStatus.PAID),
        (InvoiceStatus.ISSUED, 100, 40, 60, date(2024, 1, 1), InvoiceStatus.PARTIALLY_PAID),
        (InvoiceStatus.ISSUED, 100, 0, 100, date(2024, 1, 1), InvoiceStatus.OVERDUE),
        (InvoiceStatus.OVERDUE, 100, 0, 100, date(2024, 6, 1), InvoiceStatus.ISSUED),
        (InvoiceStatus.PAID, 0, 0, 0, None, InvoiceStatus.ISSUED),
    ])
    def test_derive_status(self, status, total, paid, balance, due, expected):
        assert engine.derive_status(status, total, paid, balance, due, TODAY) == expected


# ===================== BUILD =====================


class TestBuild:

    def test_build_invoice_defaults_from_client(self):
        invoice = make_invoice()
        assert invoice.status == InvoiceStatus.ISSUED
        assert invoice.total_amount == 11300
        assert invoice.balance_amount == 11300
        assert invoice.bill_to_name == "Acme Foods"
        assert invoice.bill_to_gst_no == "27AAAAA0000A1Z5"
        assert invoice.currency == "INR"
        assert invoice.timeline[0]["type"] == "INVOICE_CREATED"

    def test_build_invoice_requires_line_items(self):
        with pytest.raises(ValidationError, match="At least one line item is required"):
            make_invoice(line_items=[{"description": "   ", "quantity": 1, "unit_price": 10}])

    def test_build_invoice_as_draft(self):
        invoice = make_invoice(status="draft")
        assert invoice.status == InvoiceStatus.DRAFT

    def test_build_invoice_admin_only(self):
        user = User(id=2, name="U", email="u@x.com", role=UserRole.USER)
        with pytest.raises(ForbiddenError):
            engine.build_invoice("INV-0002", make_client(), None, user,
                                 {"line_items": [{"description": "Fee", "quantity": 1, "unit_price": 1}]})


# ===================== PAYMENTS =====================


class TestPayments:

    def test_partial_then_full_payment(self):
        invoice = make_invoice()
        engine.add_payment(invoice, make_admin(), 3000, method="bank_transfer", now=NOW, today=TODAY)
        assert invoice.paid_amount == 3000
        assert invoice.balance_amount == 8300
        assert invoice.status == InvoiceStatus.PARTIALLY_PAID

        engine.add_payment(invoice, make_admin(), 8300, now=NOW, today=TODAY)
        assert invoice.balance_amount == 0
        assert invoice.status == InvoiceStatus.PAID

    def test_payment_amount_must_be_positive(self):
        invoice = make_invoice()
        with pytest.raises(ValidationError, match="greater than 0"):
            engine.add_payment(invoice, make_admin(), 0, now=NOW, today=TODAY)
        assert invoice.payments == []

    @pytest.mark.parametrize("amount", [float("inf"), float("nan"), "Infinity", "-inf"])
    def test_non_finite_payment_rejected(self, amount):
        invoice = make_invoice()
        with pytest.raises(ValidationError, match="greater than 0"):
            engine.add_payment(invoice, make_admin(), amount, now=NOW, today=TODAY)
        assert invoice.payments == []
        assert invoice.paid_amount == 0
        assert invoice.balance_amount == 11300
        assert invoice.status == InvoiceStatus.ISSUED

    def test_no_payments_on_cancelled_invoice(self):
        invoice = make_invoice()
        engine.update_status(invoice, make_admin(), "CANCELLED", now=NOW, today=TODAY)
        with pytest.raises(StateConflictError):
            engine.add_payment(invoice, make_admin(), 100, now=NOW, today=TODAY)

    def test_invalid_payment_method(self):
        invoice = make_invoice()
        with pytest.raises(ValidationError, match="Invalid payment method"):
            engine.add_payment(invoice, make_admin(), 100, method="barter", now=NOW, today=TODAY)


# ===================== STATUS TRANSITIONS =====================


class TestStatusTransitions:

    def test_mark_paid_books_remaining_balance(self):
        invoice = make_invoice()
        engine.add_payment(invoice, make_admin(), 3000, now=NOW, today=TODAY)
        engine.update_status(invoice, make_admin(), "PAID", now=NOW, today=TODAY)

        assert invoice.status == InvoiceStatus.PAID
        assert invoice.balance_amount == 0
        assert invoice.payments[-1].amount == 8300
        assert invoice.payments[-1].note == engine.SETTLEMENT_NOTE
        assert invoice.timeline[-1]["message"] == "Status changed from PARTIALLY_PAID to PAID"

    def test_partially_paid_books_given_amount(self):
        invoice = make_invoice()
        engine.update_status(invoice, make_admin(), "PARTIALLY_PAID", amount=3000, now=NOW, today=TODAY)

        assert invoice.status == InvoiceStatus.PARTIALLY_PAID
        assert invoice.paid_amount == 3000
        assert invoice.balance_amount == 8300
        assert len(invoice.payments) == 1
        assert invoice.payments[0].amount == 3000
        assert invoice.payments[0].note == engine.PARTIAL_PAYMENT_NOTE
        assert invoice.timeline[-1]["message"] == "Status changed from ISSUED to PARTIALLY_PAID"

    def test_partially_paid_rejects_non_finite_amount(self):
        invoice = make_invoice()
        with pytest.raises(ValidationError, match="Provide payment amount"):
            engine.update_status(invoice, make_admin(), "PARTIALLY_PAID", amount=float("inf"), now=NOW, today=TODAY)
        assert invoice.payments == []

    def test_partially_paid_needs_amount_and_caps_at_balance(self):
        invoice = make_invoice()
        with pytest.raises(ValidationError, match="Provide payment amount"):
            engine.update_status(invoice, make_admin(), "PARTIALLY_PAID", now=NOW, today=TODAY)

        engine.update_status(invoice, make_admin(), "PARTIALLY_PAID", amount=50000, now=NOW, today=TODAY)
        assert invoice.payments[-1].amount == 11300
        assert invoice.status == InvoiceStatus.PAID

    def test_forced_statuses_stick(self):
        invoice = make_invoice()
        engine.update_status(invoice, make_admin(), "DRAFT", now=NOW, today=TODAY)
        assert invoice.status == InvoiceStatus.DRAFT

        engine.update_status(invoice, make_admin(), "ISSUED", now=NOW, today=TODAY)
        assert invoice.status == InvoiceStatus.ISSUED

    def test_update_recomputes_totals(self):
        invoice = make_invoice()
        engine.apply_invoice_update(invoice, make_admin(), {
            "line_items": [{"description": "Fee", "quantity": 2, "unit_price": 2500}],
            "tax_percent": 0,
            "discount_amount": 0,
        }, NOW, TODAY)
        assert invoice.sub_total == 5000
        assert invoice.total_amount == 5000
        assert len(invoice.line_items) == 1
