"""
Auth Router - registration and login
Registration always creates a 'user'; admins are created with
scripts/create_admin_user.py
"""
from fastapi import APIRouter, Depends, Request

from ..auth import AuthService
from ..dependencies import get_auth_service
from ..models import UserCreate, UserLogin
from ..responses import success

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/register", status_code=201)
async def register(
    request: Request,
    payload: UserCreate,
    auth_service: AuthService = Depends(get_auth_service)
):
    """Create an account (409 email_in_use if the email is taken)"""
    user = await auth_service.register(payload)
    return success(request, user, status_code=201)


@router.post("/login")
async def login(
    request: Request,
    credentials: UserLogin,
    auth_service: AuthService = Depends(get_auth_service)
):
    """Exchange email/password for a bearer token valid for 2 hours"""
    result = await auth_service.login(credentials)
    return success(request, result)
