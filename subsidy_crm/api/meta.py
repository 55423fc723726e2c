"""
Meta API - reference data for forms (scheme catalog)
"""
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from subsidy_crm.database import get_db
from subsidy_crm.models.user import User
from subsidy_crm.api.auth import get_current_user
from subsidy_crm.services.catalog import list_catalog

router = APIRouter()


class CategoryResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None

    class Config:
        from_attributes = True


class SchemeResponse(BaseModel):
    id: int
    category_id: int
    category_name: Optional[str] = None
    name: str
    code: str


class CatalogResponse(BaseModel):
    categories: List[CategoryResponse]
    schemes: List[SchemeResponse]


@router.get("/catalog", response_model=CatalogResponse)
async def get_catalog(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    categories, schemes = await list_catalog(db)
    return CatalogResponse(
        categories=[CategoryResponse.model_validate(c) for c in categories],
        schemes=[
            SchemeResponse(
                id=s.id,
                category_id=s.category_id,
                category_name=s.category.name if s.category else None,
                name=s.name,
                code=s.code,
            )
            for s in schemes
        ],
    )
