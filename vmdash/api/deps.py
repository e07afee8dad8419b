"""
Request dependencies shared by the API routers.

Session validation happens upstream; the validated caller arrives in the
X-User-Id header.
"""
from fastapi import Depends, Header, HTTPException

from vmdash.core.errors import PermissionError
from vmdash.features.subscriptions.service import get_or_create_account, is_admin


def get_current_account(x_user_id: str | None = Header(None)) -> str:
    account_id = (x_user_id or "").strip()
    if not account_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    get_or_create_account(account_id)
    return account_id


def require_admin(account_id: str = Depends(get_current_account)) -> str:
    if not is_admin(account_id):
        raise PermissionError("Admin access required")
    return account_id
