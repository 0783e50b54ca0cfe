from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_current_profile, require_roles
from ..db import get_db
from ..models.models import Profile
from ..services.lifecycle import ActingUser, Role
from ..services.reports import search_profiles


router = APIRouter(prefix="/profiles", tags=["profiles"])

# Dashboards each role may open
ROLE_VIEWS = {
    Role.USER: ["reports"],
    Role.REVIEWER: ["reports", "review-queue", "reviewed"],
    Role.ASSIGNEE: ["reports", "tasks"],
}


def _serialize_profile(p: Profile) -> dict:
    return {
        "id": str(p.id),
        "email": p.email,
        "full_name": p.full_name,
        "role": p.role,
    }


@router.get("/me")
def me(profile: Profile = Depends(get_current_profile)):
    data = _serialize_profile(profile)
    data["views"] = ROLE_VIEWS[Role(profile.role)]
    return data


@router.get("")
def list_profiles(
    role: Optional[Role] = None,
    q: Optional[str] = None,
    db: Session = Depends(get_db),
    _: ActingUser = Depends(require_roles(Role.REVIEWER)),
):
    return [_serialize_profile(p) for p in search_profiles(db, role, q)]
