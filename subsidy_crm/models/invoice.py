"""
Invoice models - billing against a client and optionally one of its projects
"""
from sqlalchemy import (
    Column, Integer, String, Text, Float, Date, DateTime, ForeignKey, JSON, Enum as SQLEnum,
)
from sqlalchemy.orm import relationship
from datetime import datetime
from enum import Enum
from subsidy_crm.database import Base, versioned_mapper_args


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    ISSUED = "ISSUED"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


class PaymentMethod(str, Enum):
    BANK_TRANSFER = "BANK_TRANSFER"
    CASH = "CASH"
    UPI = "UPI"
    CHEQUE = "CHEQUE"
    OFFLINE = "OFFLINE"
    OTHER = "OTHER"


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    invoice_no = Column(String, unique=True, index=True, nullable=False)  # INV-0001
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=True, index=True)
    status = Column(SQLEnum(InvoiceStatus, native_enum=False), nullable=False, default=InvoiceStatus.ISSUED)
    currency = Column(String, nullable=False, default="INR")
    invoice_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=True)
    subject = Column(String, nullable=True)
    notes = Column(Text, nullable=True)

    # Bill-to snapshot, defaulted from the client at creation
    bill_to_name = Column(String, nullable=True)
    bill_to_email = Column(String, nullable=True)
    bill_to_phone = Column(String, nullable=True)
    bill_to_address = Column(Text, nullable=True)
    bill_to_gst_no = Column(String, nullable=True)

    tax_percent = Column(Float, nullable=False, default=0)
    discount_amount = Column(Float, nullable=False, default=0)

    # Derived totals
    sub_total = Column(Float, nullable=False, default=0)
    tax_amount = Column(Float, nullable=False, default=0)
    total_amount = Column(Float, nullable=False, default=0)
    paid_amount = Column(Float, nullable=False, default=0)
    balance_amount = Column(Float, nullable=False, default=0)

    timeline = Column(JSON, nullable=False, default=list)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    updated_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __mapper_args__ = versioned_mapper_args(version)

    # Relationships
    client = relationship("Client", lazy="joined")
    line_items = relationship(
        "InvoiceLineItem", back_populates="invoice", cascade="all, delete-orphan",
        order_by="InvoiceLineItem.id", lazy="selectin",
    )
    payments = relationship(
        "InvoicePayment", back_populates="invoice", cascade="all, delete-orphan",
        order_by="InvoicePayment.id", lazy="selectin",
    )


class InvoiceLineItem(Base):
    __tablename__ = "invoice_line_items"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False, index=True)
    description = Column(String, nullable=False)
    quantity = Column(Float, nullable=False, default=1)
    unit_price = Column(Float, nullable=False, default=0)
    amount = Column(Float, nullable=False, default=0)

    invoice = relationship("Invoice", back_populates="line_items")


class InvoicePayment(Base):
    __tablename__ = "invoice_payments"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    paid_on = Column(Date, nullable=False)
    method = Column(SQLEnum(PaymentMethod, native_enum=False), nullable=False, default=PaymentMethod.OFFLINE)
    reference_no = Column(String, nullable=True)
    note = Column(Text, nullable=True)
    recorded_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    invoice = relationship("Invoice", back_populates="payments")
