# app/auth.py
"""Request gate.

Sign-in happens at the upstream auth provider; by the time a request gets
here the proxy has put the caller's provider user id in a header
(`AUTH_HEADER`). These dependencies turn that into a Profile row.
"""
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session
from typing import Optional
from . import crud
from .config import settings
from .db import get_db


def get_identity(request: Request) -> Optional[str]:
    value = request.headers.get(settings.auth_header)
    if value is None:
        return None
    return value.strip() or None


def require_identity(identity: Optional[str] = Depends(get_identity)) -> str:
    # resolved before get_db, so an anonymous request never opens a session
    if not identity:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return identity


def get_current_profile(identity: str = Depends(require_identity), db: Session = Depends(get_db)):
    profile = crud.get_profile_by_external_id(db, identity)
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    return profile


def require_active_profile(profile=Depends(get_current_profile)):
    if profile.is_suspended:
        raise HTTPException(
            status_code=403,
            detail={
                "error": "account_suspended",
                "message": "Your account has been suspended.",
                "suspended": True,
            },
        )
    return profile
