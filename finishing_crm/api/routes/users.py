"""
Admin User Routes - back office staff management (directors only).
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from finishing_crm.api.dependencies import get_db, require_director
from finishing_crm.models.users import UserRole
from finishing_crm.services.user_service import UserService

router = APIRouter(
    prefix="/api/admin/users",
    tags=["admin", "users"],
    dependencies=[Depends(require_director)],
)


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    email: str
    full_name: Optional[str] = None
    role: UserRole
    sales_rep_id: Optional[str] = None
    is_active: bool
    created_at: datetime


class UserListResponse(BaseModel):
    users: List[UserResponse]


class CreateUserRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    role: UserRole = UserRole.SALES_REP
    full_name: Optional[str] = None
    sales_rep_id: Optional[str] = None


class UpdateUserRequest(BaseModel):
    full_name: Optional[str] = None
    role: Optional[UserRole] = None
    sales_rep_id: Optional[str] = None
    is_active: Optional[bool] = None


@router.get("", response_model=UserListResponse)
def list_users(db: Session = Depends(get_db)):
    return {"users": UserService(db).list_users()}


@router.post("", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def create_user(request: CreateUserRequest, db: Session = Depends(get_db)):
    return UserService(db).create_user(
        email=request.email,
        role=request.role,
        full_name=request.full_name,
        sales_rep_id=request.sales_rep_id,
    )


@router.put("/{user_id}", response_model=UserResponse)
def update_user(user_id: str, request: UpdateUserRequest, db: Session = Depends(get_db)):
    return UserService(db).update_user(user_id, **request.model_dump(exclude_unset=True))
