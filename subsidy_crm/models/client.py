"""
Client model - converted customers owning subsidy projects
"""
from sqlalchemy import Column, Integer, String, Text, Boolean, Date, DateTime, ForeignKey, JSON
from sqlalchemy.orm import relationship
from datetime import datetime
from subsidy_crm.database import Base


class Client(Base):
    __tablename__ = "clients"

    id = Column(Integer, primary_key=True, index=True)
    client_code = Column(String, unique=True, index=True, nullable=False)  # CL-0001
    company_name = Column(String, nullable=False)
    gst_no = Column(String, nullable=True)
    factory_address = Column(Text, nullable=True)
    contact_person = Column(String, nullable=True)
    mobile_number = Column(String, nullable=True)
    email = Column(String, nullable=True)
    agreement_signed = Column(Boolean, nullable=False, default=False)
    agreement_date = Column(Date, nullable=True)

    assigned_consultant_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    source_lead_id = Column(Integer, ForeignKey("leads.id"), nullable=True)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    timeline = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    projects = relationship("Project", order_by="Project.id", lazy="raise", viewonly=True)
