"""
Request dependencies: the lending system and the authenticated principal
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException

from ..system import LendingSystem, get_lending_system
from ..users import UserRole


@dataclass
class Principal:
    """Caller identity injected by the upstream gateway"""
    user_id: str
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def get_system() -> LendingSystem:
    return get_lending_system()


def get_principal(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None)
) -> Principal:
    """Trust the gateway's identity headers; no re-authentication here"""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        role = UserRole((x_user_role or UserRole.USER.value).lower())
    except ValueError:
        raise HTTPException(status_code=401, detail="Unknown role")
    return Principal(user_id=x_user_id, role=role)


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return principal


def envelope(data=None, message: Optional[str] = None, success: bool = True) -> dict:
    """Response envelope used by every endpoint"""
    body = {"success": success}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body
