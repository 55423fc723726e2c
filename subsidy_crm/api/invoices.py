"""
Invoices API - billing against clients and projects, payments and status changes
"""
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from subsidy_crm.config import get_settings
from subsidy_crm.database import get_db
from subsidy_crm.models.user import User, AppModule
from subsidy_crm.models.client import Client
from subsidy_crm.models.project import Project
from subsidy_crm.models.invoice import Invoice, InvoiceStatus, PaymentMethod
from subsidy_crm.api.auth import require_module
from subsidy_crm.services import invoice_engine
from subsidy_crm.services.access import ensure_admin
from subsidy_crm.services.sequences import generate_invoice_no
from subsidy_crm.services.side_effects import PostCommitHooks, get_post_commit_hooks

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter()
invoices_user = require_module(AppModule.INVOICES)


# ===================== Schemas =====================

class LineItemIn(BaseModel):
    description: Optional[str] = None
    quantity: Optional[float] = None
    unit_price: Optional[float] = None

    class Config:
        allow_inf_nan = False


class LineItemResponse(BaseModel):
    id: int
    description: str
    quantity: float
    unit_price: float
    amount: float

    class Config:
        from_attributes = True


class PaymentResponse(BaseModel):
    id: int
    amount: float
    paid_on: date
    method: PaymentMethod
    reference_no: Optional[str] = None
    note: Optional[str] = None
    recorded_by_id: Optional[int] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class InvoiceResponse(BaseModel):
    id: int
    invoice_no: str
    client_id: int
    client_code: Optional[str] = None
    client_name: Optional[str] = None
    project_id: Optional[int] = None
    status: InvoiceStatus
    currency: str
    invoice_date: date
    due_date: Optional[date] = None
    subject: Optional[str] = None
    notes: Optional[str] = None
    bill_to_name: Optional[str] = None
    bill_to_email: Optional[str] = None
    bill_to_phone: Optional[str] = None
    bill_to_address: Optional[str] = None
    bill_to_gst_no: Optional[str] = None
    tax_percent: float = 0
    discount_amount: float = 0
    sub_total: float = 0
    tax_amount: float = 0
    total_amount: float = 0
    paid_amount: float = 0
    balance_amount: float = 0
    line_items: List[LineItemResponse] = []
    payments: List[PaymentResponse] = []
    timeline: List[Dict[str, Any]] = []
    created_by_id: Optional[int] = None
    updated_by_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class InvoiceList(BaseModel):
    invoices: List[InvoiceResponse]
    pagination: Pagination


class InvoiceCreate(BaseModel):
    client_id: Optional[int] = None
    project_id: Optional[int] = None
    status: Optional[str] = None
    currency: Optional[str] = None
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    subject: Optional[str] = None
    notes: Optional[str] = None
    bill_to_name: Optional[str] = None
    bill_to_email: Optional[str] = None
    bill_to_phone: Optional[str] = None
    bill_to_address: Optional[str] = None
    bill_to_gst_no: Optional[str] = None
    tax_percent: Optional[float] = None
    discount_amount: Optional[float] = None
    line_items: List[LineItemIn] = []

    class Config:
        allow_inf_nan = False


class InvoiceUpdate(BaseModel):
    client_id: Optional[int] = None
    project_id: Optional[int] = None
    status: Optional[str] = None
    currency: Optional[str] = None
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    subject: Optional[str] = None
    notes: Optional[str] = None
    bill_to_name: Optional[str] = None
    bill_to_email: Optional[str] = None
    bill_to_phone: Optional[str] = None
    bill_to_address: Optional[str] = None
    bill_to_gst_no: Optional[str] = None
    tax_percent: Optional[float] = None
    discount_amount: Optional[float] = None
    line_items: Optional[List[LineItemIn]] = None

    class Config:
        allow_inf_nan = False


class PaymentCreate(BaseModel):
    amount: Optional[float] = None
    method: Optional[str] = None
    paid_on: Optional[date] = None
    reference_no: Optional[str] = None
    note: Optional[str] = None

    class Config:
        allow_inf_nan = False


class StatusUpdate(BaseModel):
    status: str
    amount: Optional[float] = None
    method: Optional[str] = None
    paid_on: Optional[date] = None
    reference_no: Optional[str] = None
    note: Optional[str] = None

    class Config:
        allow_inf_nan = False


# ===================== Helpers =====================

def invoice_response(invoice: Invoice) -> InvoiceResponse:
    data = InvoiceResponse.model_validate(invoice)
    if invoice.client is not None:
        data.client_code = invoice.client.client_code
        data.client_name = invoice.client.company_name
    return data


async def load_invoice(db: AsyncSession, invoice_id: int) -> Invoice:
    result = await db.execute(
        select(Invoice).where(Invoice.id == invoice_id).execution_options(populate_existing=True)
    )
    invoice = result.unique().scalar_one_or_none()
    if invoice is None:
        raise HTTPException(status_code=404, detail="Invoice not found")
    return invoice


async def resolve_client_and_project(
    db: AsyncSession, client_id: Optional[int], project_id: Optional[int],
) -> Tuple[Client, Optional[Project]]:
    """The client comes from client_id or the project's client; the project must belong to it"""
    project = None
    if project_id:
        result = await db.execute(select(Project).where(Project.id == project_id))
        project = result.unique().scalar_one_or_none()
        if project is None:
            raise HTTPException(status_code=400, detail="Project not found")

    resolved_client_id = client_id or (project.client_id if project else None)
    if not resolved_client_id:
        raise HTTPException(status_code=400, detail="client_id is required")

    client = await db.get(Client, resolved_client_id)
    if client is None:
        raise HTTPException(status_code=400, detail="Client not found")
    if project is not None and project.client_id != client.id:
        raise HTTPException(status_code=400, detail="Selected project does not belong to selected client")
    return client, project


def _amounts(invoice: Invoice) -> Dict[str, Any]:
    return {
        "status": invoice.status,
        "total_amount": invoice.total_amount,
        "paid_amount": invoice.paid_amount,
        "balance_amount": invoice.balance_amount,
    }


# ===================== Read =====================

@router.get("", response_model=InvoiceList)
async def list_invoices(
    client_id: Optional[int] = None,
    project_id: Optional[int] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(invoices_user),
):
    conditions = []
    if client_id:
        conditions.append(Invoice.client_id == client_id)
    if project_id:
        conditions.append(Invoice.project_id == project_id)
    if status and status.strip().upper() in InvoiceStatus.__members__:
        conditions.append(Invoice.status == InvoiceStatus(status.strip().upper()))
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        conditions.append(or_(
            Invoice.invoice_no.ilike(pattern),
            Invoice.subject.ilike(pattern),
            Invoice.bill_to_name.ilike(pattern),
            Invoice.bill_to_email.ilike(pattern),
        ))

    total = (await db.execute(select(func.count(Invoice.id)).where(*conditions))).scalar() or 0
    result = await db.execute(
        select(Invoice)
        .where(*conditions)
        .order_by(Invoice.updated_at.desc(), Invoice.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    invoices = [invoice_response(i) for i in result.unique().scalars().all()]
    return InvoiceList(
        invoices=invoices,
        pagination=Pagination(page=page, limit=limit, total=total, total_pages=max(1, -(-total // limit))),
    )


@router.get("/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(
    invoice_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(invoices_user),
):
    return invoice_response(await load_invoice(db, invoice_id))


# ===================== Admin writes =====================

@router.post("", response_model=InvoiceResponse, status_code=201)
async def create_invoice(
    data: InvoiceCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(invoices_user),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    ensure_admin(current_user)
    client, project = await resolve_client_and_project(db, data.client_id, data.project_id)
    payload = data.model_dump()
    payload["currency"] = payload.get("currency") or settings.DEFAULT_CURRENCY

    # Validate before a number is allocated
    if not invoice_engine.normalize_line_items(payload["line_items"]):
        raise HTTPException(status_code=400, detail="At least one line item is required")
    invoice = invoice_engine.build_invoice(
        await generate_invoice_no(db), client, project.id if project else None, current_user, payload,
    )
    db.add(invoice)
    await db.commit()
    response = invoice_response(await load_invoice(db, invoice.id))
    logger.info(f"Invoice {invoice.invoice_no} created for client {client.client_code}")

    hooks.broadcast(
        "INVOICE_CREATED", "Invoice created", f"{invoice.invoice_no} created for {client.company_name}",
        payload={"invoice_id": invoice.id, "client_id": client.id, "project_id": project.id if project else None},
        actor_id=current_user.id,
    )
    hooks.audit(
        "INVOICE_CREATED", "INVOICE", invoice.id, current_user.id,
        after={
            "invoice_no": invoice.invoice_no,
            "client": client.company_name,
            "project_code": project.project_code if project else None,
            "total_amount": invoice.total_amount,
            "status": invoice.status,
        },
    )
    await hooks.run(db)
    return response


@router.patch("/{invoice_id}", response_model=InvoiceResponse)
async def update_invoice(
    invoice_id: int,
    data: InvoiceUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(invoices_user),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    ensure_admin(current_user)
    invoice = await load_invoice(db, invoice_id)
    changes = data.model_dump(exclude_unset=True)
    before = _amounts(invoice)

    if "client_id" in changes or "project_id" in changes:
        client, project = await resolve_client_and_project(
            db,
            changes.get("client_id") or invoice.client_id,
            changes["project_id"] if "project_id" in changes else invoice.project_id,
        )
        invoice.client_id = client.id
        invoice.project_id = project.id if project else None

    invoice_engine.apply_invoice_update(invoice, current_user, changes)
    after = _amounts(invoice)
    await db.commit()
    response = invoice_response(await load_invoice(db, invoice.id))

    hooks.broadcast(
        "INVOICE_UPDATED", "Invoice updated", f"{invoice.invoice_no} was updated",
        payload={"invoice_id": invoice.id, "status": invoice.status}, actor_id=current_user.id,
    )
    hooks.audit("INVOICE_UPDATED", "INVOICE", invoice.id, current_user.id, before=before, after=after)
    await hooks.run(db)
    return response


@router.post("/{invoice_id}/payments", response_model=InvoiceResponse, status_code=201)
async def add_invoice_payment(
    invoice_id: int,
    data: PaymentCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(invoices_user),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    ensure_admin(current_user)
    invoice = await load_invoice(db, invoice_id)
    payment = invoice_engine.add_payment(
        invoice, current_user, data.amount, method=data.method, paid_on=data.paid_on,
        reference_no=data.reference_no, note=data.note,
    )
    await db.commit()
    response = invoice_response(await load_invoice(db, invoice.id))

    hooks.broadcast(
        "INVOICE_PAYMENT_ADDED", "Invoice payment recorded", f"{invoice.invoice_no} payment updated",
        payload={"invoice_id": invoice.id, "status": invoice.status, "paid_amount": invoice.paid_amount},
        actor_id=current_user.id,
    )
    hooks.audit(
        "INVOICE_PAYMENT_ADDED", "INVOICE", invoice.id, current_user.id,
        after={
            "payment_amount": payment.amount,
            "payment_method": payment.method,
            **_amounts(invoice),
        },
    )
    await hooks.run(db)
    return response


@router.patch("/{invoice_id}/status", response_model=InvoiceResponse)
async def update_invoice_status(
    invoice_id: int,
    data: StatusUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(invoices_user),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    ensure_admin(current_user)
    invoice = await load_invoice(db, invoice_id)
    before_status = invoice.status
    invoice_engine.update_status(
        invoice, current_user, data.status, amount=data.amount, method=data.method,
        paid_on=data.paid_on, reference_no=data.reference_no, note=data.note,
    )
    await db.commit()
    response = invoice_response(await load_invoice(db, invoice.id))

    hooks.broadcast(
        "INVOICE_STATUS_UPDATED", "Invoice status updated",
        f"{invoice.invoice_no}: {InvoiceStatus(before_status).value} -> {InvoiceStatus(invoice.status).value}",
        payload={"invoice_id": invoice.id, "status": invoice.status}, actor_id=current_user.id,
    )
    hooks.audit(
        "INVOICE_STATUS_UPDATED", "INVOICE", invoice.id, current_user.id,
        before={"status": before_status}, after={"status": invoice.status},
        metadata={"note": data.note} if data.note else None,
    )
    await hooks.run(db)
    return response
