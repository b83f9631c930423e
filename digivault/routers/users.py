from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from digivault.db.session import get_db
from digivault.models.user import User
from digivault.security.deps import get_current_user, require_admin
from digivault.schemas.auth import UserOut, UpdateUserRoleRequest


router = APIRouter()


@router.get("/users/me", response_model=UserOut)
def read_me(user: User = Depends(get_current_user)) -> UserOut:
    return user


@router.get("/users", response_model=List[UserOut])
def list_users(_: User = Depends(require_admin), db: Session = Depends(get_db)) -> List[UserOut]:
    return db.query(User).order_by(User.id).all()


@router.patch("/users/{user_id}/role", response_model=UserOut)
def update_user_role(
    user_id: int,
    payload: UpdateUserRoleRequest,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> UserOut:
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    user.role = payload.role
    db.commit()
    return user
