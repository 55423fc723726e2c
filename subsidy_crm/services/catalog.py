"""
Scheme catalog - the categories and schemes a project can be filed under.

The catalog is static reference data seeded by scripts/seed_catalog.py.
Projects keep a free-text scheme name alongside the optional catalog
references, so a project can be opened before its scheme is decided.
"""
import logging
import re
from typing import Any, Dict, List, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subsidy_crm.exceptions import NotFoundError, ValidationError
from subsidy_crm.models.catalog import Category, Scheme

logger = logging.getLogger(__name__)

CATALOG = [
    ("Subsidy Schemes", "Central and state subsidy programs", [
        "PMEGP",
        "CGTMSE",
        "CLCSS",
        "M-SIPS",
        "TUF Scheme",
        "State Capital Subsidy",
        "Interest Subsidy",
        "Power Tariff Subsidy",
        "Stamp Duty Exemption",
        "SGST Reimbursement",
        "Export Promotion Subsidy",
    ]),
    ("Land & Infrastructure", "Industrial land and infra approvals", [
        "MIDC Land Allotment",
        "GIDC Plot Allotment",
        "Industrial Shed Allocation",
        "NA Conversion Support",
        "Building Plan Approval",
        "Factory License Setup",
        "Boiler Approval",
        "Electrical Sanction",
        "Water Connection Approval",
        "Fire NOC",
    ]),
    ("Compliance & Funding", "Funding support and mandatory compliance tracks", [
        "MSME Registration",
        "Udyam Support",
        "Pollution NOC",
        "Consent to Establish",
        "Consent to Operate",
        "ISO Certification Support",
        "Bank Term Loan Support",
        "Working Capital Support",
        "Startup India Benefits",
        "SEZ Unit Approval",
        "FSSAI License",
        "Trade Mark Filing",
    ]),
]


def code_from_name(name: str) -> str:
    """'State Capital Subsidy' -> 'STATE_CAPITAL_SUBSIDY', at most 30 chars"""
    code = re.sub(r"[^A-Z0-9]+", "_", name.upper()).strip("_")
    return code[:30]


async def seed_catalog(db: AsyncSession) -> Tuple[int, int]:
    """
    Upsert every category and scheme in CATALOG.

    Matching is by category name and (category, scheme name); existing rows
    are updated in place and re-activated. Returns (categories, schemes)
    created. The caller commits.
    """
    categories_created = 0
    schemes_created = 0
    for category_name, description, scheme_names in CATALOG:
        result = await db.execute(select(Category).where(Category.name == category_name))
        category = result.scalar_one_or_none()
        if category is None:
            category = Category(name=category_name)
            db.add(category)
            categories_created += 1
        category.description = description
        await db.flush()

        for scheme_name in scheme_names:
            result = await db.execute(
                select(Scheme).where(Scheme.category_id == category.id, Scheme.name == scheme_name)
            )
            scheme = result.unique().scalar_one_or_none()
            if scheme is None:
                scheme = Scheme(category_id=category.id, name=scheme_name)
                db.add(scheme)
                schemes_created += 1
            scheme.code = code_from_name(scheme_name)
            scheme.is_active = True
        await db.flush()

    logger.info(f"Catalog seeded: {categories_created} new categories, {schemes_created} new schemes")
    return categories_created, schemes_created


async def list_catalog(db: AsyncSession) -> Tuple[List[Category], List[Scheme]]:
    """All categories, and the active schemes, both by name"""
    categories = (await db.execute(select(Category).order_by(Category.name))).scalars().all()
    result = await db.execute(
        select(Scheme).where(Scheme.is_active.is_(True)).order_by(Scheme.name)
    )
    return list(categories), list(result.unique().scalars().all())


async def resolve_scheme_fields(db: AsyncSession, fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate catalog references in project fields.

    A chosen scheme fills in its category and, when no scheme name was
    typed, the project's scheme name.
    """
    category_id = fields.get("category_id")
    scheme_id = fields.get("scheme_id")

    if category_id is not None and await db.get(Category, category_id) is None:
        raise NotFoundError("Category not found")

    if scheme_id is not None:
        scheme = await db.get(Scheme, scheme_id)
        if scheme is None:
            raise NotFoundError("Scheme not found")
        if category_id is not None and scheme.category_id != category_id:
            raise ValidationError("Selected scheme does not belong to selected category")
        fields["category_id"] = scheme.category_id
        if not (fields.get("scheme_name") or "").strip():
            fields["scheme_name"] = scheme.name

    return fields
