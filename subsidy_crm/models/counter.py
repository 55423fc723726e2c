"""
Counter model - named monotonic sequences for human-readable codes
"""
from sqlalchemy import Column, Integer, String
from subsidy_crm.database import Base


class Counter(Base):
    __tablename__ = "counters"

    name = Column(String, primary_key=True)  # "lead", "client", "project", "invoice"
    seq = Column(Integer, nullable=False, default=0)
