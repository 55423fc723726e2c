"""
Invoice computation engine.

Line items are normalized, totals are recomputed from items, tax, discount
and payments, and the status is re-derived every time an invoice is saved.
Only DRAFT and CANCELLED are sticky; everything else follows the money.
"""
import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from subsidy_crm.exceptions import ValidationError, StateConflictError
from subsidy_crm.models.client import Client
from subsidy_crm.models.invoice import (
    Invoice, InvoiceLineItem, InvoicePayment, InvoiceStatus, PaymentMethod,
)
from subsidy_crm.models.user import User
from subsidy_crm.services.access import ensure_admin
from subsidy_crm.utils.helpers import append_timeline, round_money, to_number
from subsidy_crm.utils.validators import parse_enum

logger = logging.getLogger(__name__)

PARTIAL_PAYMENT_NOTE = "Partial payment recorded via status update"
SETTLEMENT_NOTE = "Settled offline via status update"


def clean_string(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _get(item, key: str):
    if isinstance(item, dict):
        return item.get(key)
    return getattr(item, key, None)


# ==================== PURE COMPUTATION ====================


def normalize_line_items(items: Optional[Iterable[Any]]) -> List[Dict[str, Any]]:
    """Drop blank descriptions, clamp quantity/price at zero, recompute amounts"""
    normalized = []
    for item in items or []:
        description = clean_string(_get(item, "description"))
        if not description:
            continue
        quantity = max(to_number(_get(item, "quantity"), 1), 0)
        unit_price = max(to_number(_get(item, "unit_price"), 0), 0)
        normalized.append({
            "description": description,
            "quantity": quantity,
            "unit_price": unit_price,
            "amount": round_money(quantity * unit_price),
        })
    return normalized


def sum_payments(payments: Optional[Iterable[Any]]) -> float:
    return round_money(sum(to_number(_get(p, "amount"), 0) for p in payments or []))


def calculate_totals(line_items: Iterable[Any], tax_percent=0, discount_amount=0,
                     payments: Optional[Iterable[Any]] = None) -> Dict[str, float]:
    sub_total = round_money(sum(to_number(_get(item, "amount"), 0) for item in line_items))
    tax = max(to_number(tax_percent, 0), 0)
    tax_amount = round_money(sub_total * tax / 100)
    discount = max(to_number(discount_amount, 0), 0)
    total_amount = round_money(max(sub_total + tax_amount - discount, 0))
    paid_amount = sum_payments(payments)
    balance_amount = round_money(max(total_amount - paid_amount, 0))
    return {
        "sub_total": sub_total,
        "tax_amount": tax_amount,
        "total_amount": total_amount,
        "paid_amount": paid_amount,
        "balance_amount": balance_amount,
    }


def derive_status(status, total_amount: float, paid_amount: float, balance_amount: float,
                  due_date: Optional[date] = None, today: Optional[date] = None) -> InvoiceStatus:
    """First match wins: sticky CANCELLED/DRAFT, then PAID, PARTIALLY_PAID, OVERDUE, ISSUED"""
    today = today or date.today()
    if status == InvoiceStatus.CANCELLED:
        return InvoiceStatus.CANCELLED
    if status == InvoiceStatus.DRAFT:
        return InvoiceStatus.DRAFT
    if total_amount > 0 and paid_amount >= total_amount:
        return InvoiceStatus.PAID
    if paid_amount > 0 and balance_amount > 0:
        return InvoiceStatus.PARTIALLY_PAID
    if due_date and due_date < today and balance_amount > 0:
        return InvoiceStatus.OVERDUE
    return InvoiceStatus.ISSUED


# ==================== AGGREGATE SYNC ====================


def sync_invoice(invoice: Invoice, today: Optional[date] = None) -> Invoice:
    """Normalize items, clamp tax/discount, recompute totals and status in place"""
    for item in list(invoice.line_items):
        description = clean_string(item.description)
        if not description:
            invoice.line_items.remove(item)
            continue
        quantity = max(to_number(item.quantity, 1), 0)
        unit_price = max(to_number(item.unit_price, 0), 0)
        item.description = description
        item.quantity = quantity
        item.unit_price = unit_price
        item.amount = round_money(quantity * unit_price)

    invoice.tax_percent = max(to_number(invoice.tax_percent, 0), 0)
    invoice.discount_amount = max(to_number(invoice.discount_amount, 0), 0)

    totals = calculate_totals(invoice.line_items, invoice.tax_percent, invoice.discount_amount, invoice.payments)
    for key, value in totals.items():
        setattr(invoice, key, value)

    invoice.status = derive_status(
        invoice.status,
        invoice.total_amount,
        invoice.paid_amount,
        invoice.balance_amount,
        invoice.due_date,
        today,
    )
    return invoice


def replace_line_items(invoice: Invoice, items: Iterable[Any]) -> None:
    invoice.line_items = [InvoiceLineItem(**item) for item in normalize_line_items(items)]


def _payment_method(value) -> PaymentMethod:
    raw = clean_string(getattr(value, "value", value)) or PaymentMethod.OFFLINE.value
    return parse_enum(PaymentMethod, raw, "Invalid payment method")


def _paid_on(value, now: datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return now.date()


# ==================== OPERATIONS ====================


def add_payment(invoice: Invoice, actor: User, amount, method=None, paid_on: Optional[date] = None,
                reference_no: Optional[str] = None, note: Optional[str] = None,
                now: Optional[datetime] = None, today: Optional[date] = None) -> InvoicePayment:
    now = now or datetime.utcnow()
    ensure_admin(actor)

    if invoice.status == InvoiceStatus.CANCELLED:
        raise StateConflictError("Cannot add payments to a cancelled invoice")
    value = max(to_number(amount, 0), 0)
    if not value:
        raise ValidationError("Payment amount must be greater than 0")
    payment_method = _payment_method(method)

    payment = InvoicePayment(
        amount=round_money(value),
        paid_on=_paid_on(paid_on, now),
        method=payment_method,
        reference_no=clean_string(reference_no) or None,
        note=clean_string(note) or None,
        recorded_by_id=actor.id,
        created_at=now,
    )
    invoice.payments.append(payment)
    sync_invoice(invoice, today)
    invoice.updated_by_id = actor.id
    invoice.updated_at = now
    append_timeline(invoice, "INVOICE_PAYMENT_ADDED", f"Payment of {payment.amount:g} added", actor.id, now)
    logger.info(f"Payment {payment.amount} recorded on {invoice.invoice_no}")
    return payment


def update_status(invoice: Invoice, actor: User, target, amount=None, method=None,
                  paid_on: Optional[date] = None, reference_no: Optional[str] = None,
                  note: Optional[str] = None, now: Optional[datetime] = None,
                  today: Optional[date] = None) -> Invoice:
    """
    Explicit status transition.

    PARTIALLY_PAID books a payment of the given amount (capped at the balance),
    PAID books the remaining balance. CANCELLED, DRAFT and OVERDUE are forced
    after the recompute so a freshly booked payment cannot override them.
    """
    now = now or datetime.utcnow()
    ensure_admin(actor)
    target_status = parse_enum(InvoiceStatus, clean_string(getattr(target, "value", target)), "Invalid status")

    before = InvoiceStatus(invoice.status)
    status_note = clean_string(note)
    pending_payment = None

    if target_status == InvoiceStatus.PARTIALLY_PAID:
        partial = max(to_number(amount, 0), 0)
        if not partial:
            raise ValidationError("Provide payment amount to mark as PARTIALLY_PAID")
        pending_payment = (min(partial, invoice.balance_amount), _payment_method(method),
                           status_note or PARTIAL_PAYMENT_NOTE)
    elif target_status == InvoiceStatus.PAID and invoice.balance_amount > 0:
        pending_payment = (invoice.balance_amount, _payment_method(method), status_note or SETTLEMENT_NOTE)

    if pending_payment:
        value, payment_method, payment_note = pending_payment
        invoice.payments.append(InvoicePayment(
            amount=round_money(value),
            paid_on=_paid_on(paid_on, now),
            method=payment_method,
            reference_no=clean_string(reference_no) or None,
            note=payment_note,
            recorded_by_id=actor.id,
            created_at=now,
        ))

    invoice.status = target_status
    sync_invoice(invoice, today)

    if target_status in (InvoiceStatus.CANCELLED, InvoiceStatus.DRAFT, InvoiceStatus.OVERDUE):
        invoice.status = target_status
    if target_status == InvoiceStatus.ISSUED and invoice.status == InvoiceStatus.DRAFT:
        invoice.status = InvoiceStatus.ISSUED

    after = InvoiceStatus(invoice.status)
    invoice.updated_by_id = actor.id
    invoice.updated_at = now
    suffix = f" ({status_note})" if status_note else ""
    append_timeline(
        invoice, "INVOICE_STATUS_UPDATED",
        f"Status changed from {before.value} to {after.value}{suffix}",
        actor.id, now,
        meta={"before": before.value, "after": after.value},
    )
    return invoice


def build_invoice(invoice_no: str, client: Client, project_id: Optional[int], actor: User,
                  data: Dict[str, Any], now: Optional[datetime] = None,
                  today: Optional[date] = None) -> Invoice:
    """New invoice from request data; bill-to fields default from the client"""
    now = now or datetime.utcnow()
    ensure_admin(actor)

    line_items = normalize_line_items(data.get("line_items"))
    if not line_items:
        raise ValidationError("At least one line item is required")

    draft_requested = clean_string(getattr(data.get("status"), "value", data.get("status"))).upper() == "DRAFT"

    invoice = Invoice(
        invoice_no=invoice_no,
        client_id=client.id,
        project_id=project_id,
        currency=clean_string(data.get("currency")) or "INR",
        invoice_date=data.get("invoice_date") or now.date(),
        due_date=data.get("due_date"),
        subject=clean_string(data.get("subject")) or None,
        notes=clean_string(data.get("notes")) or None,
        bill_to_name=clean_string(data.get("bill_to_name")) or client.company_name,
        bill_to_email=clean_string(data.get("bill_to_email")) or client.email,
        bill_to_phone=clean_string(data.get("bill_to_phone")) or client.mobile_number,
        bill_to_address=clean_string(data.get("bill_to_address")) or client.factory_address,
        bill_to_gst_no=clean_string(data.get("bill_to_gst_no")) or client.gst_no,
        tax_percent=max(to_number(data.get("tax_percent"), 0), 0),
        discount_amount=max(to_number(data.get("discount_amount"), 0), 0),
        line_items=[InvoiceLineItem(**item) for item in line_items],
        payments=[],
        status=InvoiceStatus.DRAFT if draft_requested else InvoiceStatus.ISSUED,
        created_by_id=actor.id,
        updated_by_id=actor.id,
        timeline=[],
    )
    append_timeline(invoice, "INVOICE_CREATED", f"Invoice {invoice_no} created", actor.id, now)
    sync_invoice(invoice, today)
    return invoice


INVOICE_TEXT_FIELDS = (
    "subject", "notes", "bill_to_name", "bill_to_email", "bill_to_phone", "bill_to_address", "bill_to_gst_no",
)


def apply_invoice_update(invoice: Invoice, actor: User, changes: Dict[str, Any],
                         now: Optional[datetime] = None, today: Optional[date] = None) -> Invoice:
    """
    Field edits. A requested status may force DRAFT or CANCELLED, or lift a
    draft to ISSUED; any other requested status is ignored in favour of the
    derived one. Client/project reassignment is resolved by the caller.
    """
    now = now or datetime.utcnow()
    ensure_admin(actor)

    for field in ("invoice_date", "due_date"):
        if field in changes:
            setattr(invoice, field, changes[field])
    for field in INVOICE_TEXT_FIELDS:
        if field in changes:
            setattr(invoice, field, clean_string(changes[field]) or None)
    if "currency" in changes:
        invoice.currency = clean_string(changes["currency"]) or "INR"
    if "tax_percent" in changes:
        invoice.tax_percent = max(to_number(changes["tax_percent"], 0), 0)
    if "discount_amount" in changes:
        invoice.discount_amount = max(to_number(changes["discount_amount"], 0), 0)
    if "line_items" in changes:
        replace_line_items(invoice, changes["line_items"] or [])

    if changes.get("status") is not None:
        requested = clean_string(getattr(changes["status"], "value", changes["status"])).upper()
        if requested in (InvoiceStatus.CANCELLED.value, InvoiceStatus.DRAFT.value):
            invoice.status = InvoiceStatus(requested)
        elif requested == InvoiceStatus.ISSUED.value and invoice.status == InvoiceStatus.DRAFT:
            invoice.status = InvoiceStatus.ISSUED

    sync_invoice(invoice, today)
    invoice.updated_by_id = actor.id
    invoice.updated_at = now
    append_timeline(invoice, "INVOICE_UPDATED", f"Invoice {invoice.invoice_no} details updated", actor.id, now)
    return invoice
