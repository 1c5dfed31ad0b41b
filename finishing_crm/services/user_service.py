"""
Back office user management (director only at the API layer).
"""
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from finishing_crm.lib.logging import get_logger
from finishing_crm.models.users import User, UserRole
from finishing_crm.services.errors import AlreadyExistsError, NotFoundError

logger = get_logger(__name__)


class UserService:
    def __init__(self, db: Session):
        self.db = db

    def list_users(self, include_inactive: bool = True) -> List[User]:
        stmt = select(User).order_by(User.email)
        if not include_inactive:
            stmt = stmt.where(User.is_active.is_(True))
        return list(self.db.execute(stmt).scalars().all())

    def get_user(self, user_id: str) -> User:
        user = self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    def create_user(
        self,
        email: str,
        role: UserRole,
        full_name: Optional[str] = None,
        sales_rep_id: Optional[str] = None,
    ) -> User:
        email = email.strip().lower()
        if self.db.execute(select(User.user_id).where(User.email == email)).first():
            raise AlreadyExistsError(f"User with email '{email}' already exists")

        user = User(email=email, role=role, full_name=full_name, sales_rep_id=sales_rep_id)
        self.db.add(user)
        self.db.commit()
        logger.info("User created", extra={"user_id": user.user_id, "role": role.value})
        return user

    def update_user(
        self,
        user_id: str,
        full_name: Optional[str] = None,
        role: Optional[UserRole] = None,
        sales_rep_id: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> User:
        user = self.get_user(user_id)
        if full_name is not None:
            user.full_name = full_name
        if role is not None:
            user.role = role
        if sales_rep_id is not None:
            user.sales_rep_id = sales_rep_id
        if is_active is not None:
            user.is_active = is_active
        self.db.commit()
        logger.info("User updated", extra={"user_id": user_id})
        return user
