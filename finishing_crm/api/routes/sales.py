"""
Sales Routes - rep-facing commission and suggestions.

Provides:
- GET /api/admin/commission/current?sales_rep_id=: Current month commission
- GET /api/admin/suggestions: Next best actions (own companies; directors see all)
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from finishing_crm.api.dependencies import get_current_user, get_db
from finishing_crm.models.users import User
from finishing_crm.services.commission_service import CommissionService
from finishing_crm.services.suggestion_service import SuggestionService

router = APIRouter(prefix="/api/admin", tags=["admin", "sales"])


class SuggestionResponse(BaseModel):
    action: str
    company_id: str
    company_name: str
    priority: int
    reason: str
    context: Dict[str, Any]


class SuggestionListResponse(BaseModel):
    suggestions: List[SuggestionResponse]


@router.get("/commission/current")
def current_commission(
    sales_rep_id: Optional[str] = Query(None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    service = CommissionService(db)
    rep_id = service.resolve_rep(user, sales_rep_id)
    return service.current_month(rep_id)


@router.get("/suggestions", response_model=SuggestionListResponse)
def suggestions(
    sales_rep_id: Optional[str] = Query(None, description="Directors only: filter by rep"),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    rep_id = sales_rep_id if user.is_director else user.sales_rep_id
    items = SuggestionService(db).suggestions(sales_rep_id=rep_id, limit=limit)
    return {"suggestions": [s.to_dict() for s in items]}
