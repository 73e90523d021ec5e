"""User account endpoints: self-service deletion and admin export/restore"""
import json
from typing import Iterator

from fastapi import APIRouter, Depends, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import sessionmaker

from app.api.deps import get_auth_service, get_current_user, get_session_factory, require_role
from app.exceptions import UserNotFound
from app.models.user import User
from app.repositories.users import iter_for_export
from app.schemas.user import UserResponse
from app.services.auth_service import AuthService
from app.utils.logger import logger

router = APIRouter(prefix="/api/users", tags=["users"])

ADMIN_ROLE = "ROLE_ADMIN"


@router.delete("/me", status_code=status.HTTP_204_NO_CONTENT)
def delete_me(
    user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    """Soft-delete the caller's account. The row is kept; login stops working."""
    service.soft_delete(user)


@router.post("/{user_id}/restore", response_model=UserResponse)
def restore_user(
    user_id: int,
    service: AuthService = Depends(get_auth_service),
    _: User = Depends(require_role(ADMIN_ROLE)),
) -> UserResponse:
    """Undo a soft delete (admin only)."""
    user = service.users.get(user_id)
    if user is None:
        raise UserNotFound()
    return UserResponse.from_user(service.restore(user))


@router.get("/export")
def export_users(
    admin: User = Depends(require_role(ADMIN_ROLE)),
    session_factory: sessionmaker = Depends(get_session_factory),
) -> StreamingResponse:
    """Stream all users as NDJSON (admin only).

    Rows are read in batches on a dedicated session that lives exactly as long
    as the response body.
    """
    logger.info(f"User export started by {admin.id}", extra={"user_id": admin.id, "action": "export"})

    def _lines() -> Iterator[str]:
        for row in iter_for_export(session_factory):
            yield json.dumps(row) + "\n"

    return StreamingResponse(_lines(), media_type="application/x-ndjson")
