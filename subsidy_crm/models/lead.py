"""
Lead models - enquiries tracked from first contact to conversion
"""
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, ForeignKey, JSON, Enum as SQLEnum,
)
from sqlalchemy.orm import relationship
from datetime import datetime
from enum import Enum
from subsidy_crm.database import Base


class LeadStatus(str, Enum):
    NEW = "NEW"
    CONTACTED = "CONTACTED"
    FOLLOW_UP = "FOLLOW_UP"
    CONVERTED = "CONVERTED"
    LOST = "LOST"


class LeadSource(str, Enum):
    WEBSITE = "WEBSITE"
    EXHIBITION = "EXHIBITION"
    REFERRAL = "REFERRAL"
    WHATSAPP = "WHATSAPP"
    COLD_CALL = "COLD_CALL"
    MANUAL = "MANUAL"


class RequirementType(str, Enum):
    SUBSIDY = "SUBSIDY"
    LAND = "LAND"
    FUNDING = "FUNDING"
    COMPLIANCE = "COMPLIANCE"


class LeadTemperature(str, Enum):
    HOT = "HOT"
    WARM = "WARM"
    COLD = "COLD"


# Statuses that count as the first response to an enquiry
RESPONSE_STATUSES = (LeadStatus.CONTACTED, LeadStatus.FOLLOW_UP, LeadStatus.CONVERTED)


class Lead(Base):
    __tablename__ = "leads"

    id = Column(Integer, primary_key=True, index=True)
    lead_code = Column(String, unique=True, index=True, nullable=False)  # LEAD-0001
    company_name = Column(String, nullable=False)
    contact_person = Column(String, nullable=False)
    mobile_number = Column(String, nullable=False)
    email = Column(String, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    industry_type = Column(String, nullable=True)
    requirement_type = Column(SQLEnum(RequirementType, native_enum=False), default=RequirementType.SUBSIDY)
    source = Column(SQLEnum(LeadSource, native_enum=False), nullable=False, default=LeadSource.MANUAL)
    status = Column(SQLEnum(LeadStatus, native_enum=False), nullable=False, default=LeadStatus.NEW)

    assigned_to_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    enquiry_received_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    first_response_at = Column(DateTime, nullable=True)
    first_response_minutes = Column(Integer, nullable=True)
    last_interaction_at = Column(DateTime, nullable=True, default=datetime.utcnow, index=True)
    last_status_changed_at = Column(DateTime, nullable=True, default=datetime.utcnow)
    update_count = Column(Integer, nullable=False, default=0)

    # Communication stats
    notes_count = Column(Integer, nullable=False, default=0)
    calls_count = Column(Integer, nullable=False, default=0)
    total_call_duration_minutes = Column(Integer, nullable=False, default=0)

    next_follow_up_at = Column(DateTime, nullable=True)
    is_converted = Column(Boolean, nullable=False, default=False)
    converted_at = Column(DateTime, nullable=True)
    converted_client_id = Column(Integer, nullable=True, index=True)  # clients.id

    status_history = Column(JSON, nullable=False, default=list)  # [{from, to, at, changed_by}]
    timeline = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    notes = relationship(
        "LeadNote", back_populates="lead", cascade="all, delete-orphan",
        order_by="LeadNote.id", lazy="selectin",
    )
    calls = relationship(
        "LeadCall", back_populates="lead", cascade="all, delete-orphan",
        order_by="LeadCall.id", lazy="selectin",
    )


class LeadNote(Base):
    __tablename__ = "lead_notes"

    id = Column(Integer, primary_key=True, index=True)
    lead_id = Column(Integer, ForeignKey("leads.id"), nullable=False, index=True)
    note = Column(Text, nullable=False)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    lead = relationship("Lead", back_populates="notes")


class LeadCall(Base):
    __tablename__ = "lead_calls"

    id = Column(Integer, primary_key=True, index=True)
    lead_id = Column(Integer, ForeignKey("leads.id"), nullable=False, index=True)
    call_at = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=0)
    summary = Column(Text, nullable=False)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    lead = relationship("Lead", back_populates="calls")
