"""
Human-readable codes (LEAD-0001, CL-0001, PRJ-0001, INV-0001) backed by counters
"""
import logging
from sqlalchemy.ext.asyncio import AsyncSession

from subsidy_crm.models.counter import Counter
from subsidy_crm.utils.db_compat import upsert_increment

logger = logging.getLogger(__name__)

PREFIXES = {
    "lead": "LEAD",
    "client": "CL",
    "project": "PRJ",
    "invoice": "INV",
}


async def next_sequence(db: AsyncSession, name: str) -> int:
    result = await db.execute(upsert_increment(Counter.__table__, "name", name, "seq"))
    return int(result.scalar_one())


def format_code(prefix: str, seq: int) -> str:
    return f"{prefix}-{seq:04d}"


async def generate_code(db: AsyncSession, name: str) -> str:
    """Allocate the next code for a named sequence"""
    seq = await next_sequence(db, name)
    code = format_code(PREFIXES[name], seq)
    logger.debug(f"Allocated {code}")
    return code


async def generate_lead_code(db: AsyncSession) -> str:
    return await generate_code(db, "lead")


async def generate_client_code(db: AsyncSession) -> str:
    return await generate_code(db, "client")


async def generate_project_code(db: AsyncSession) -> str:
    return await generate_code(db, "project")


async def generate_invoice_no(db: AsyncSession) -> str:
    return await generate_code(db, "invoice")
