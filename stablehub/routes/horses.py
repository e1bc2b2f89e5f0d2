from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_access
from ..db import get_db
from ..errors import Forbidden, NotFound
from ..models.models import Horse, Stable
from ..services.access import AccessResolver
from ..services.activity_history import list_horse_history, list_stable_history, serialize_entry


router = APIRouter(tags=["horses"])


def _resolve_or_forbid(db: Session, horse_id: str, access: AccessResolver):
    if db.query(Horse.id).filter(Horse.id == horse_id).first() is None:
        raise NotFound("Horse", horse_id)
    ctx = access.resolve(horse_id)
    if ctx is None:
        raise Forbidden("You do not have access to this horse")
    return ctx


@router.get("/horses/{horse_id}/access")
def get_horse_access(
    horse_id: str,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    ctx = _resolve_or_forbid(db, horse_id, access)
    return ctx.model_dump(mode="json")


@router.get("/horses/{horse_id}/activity-history")
def get_horse_history(
    horse_id: str,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    category: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    """
    Activity history for a horse.
    Placement-sourced callers only see entries from the placement date onward,
    unless the horse shares its full history.
    """
    ctx = _resolve_or_forbid(db, horse_id, access)
    entries = list_horse_history(
        db,
        horse_id,
        cutoff=ctx.history_cutoff,
        start_date=start_date,
        end_date=end_date,
        category=category,
        limit=limit,
    )
    return {
        "horse_id": horse_id,
        "access_source": ctx.access_source.value,
        "history_cutoff": ctx.history_cutoff.isoformat() if ctx.history_cutoff else None,
        "entries": [serialize_entry(e) for e in entries],
    }


@router.get("/stables/{stable_id}/activity-history")
def get_stable_history(
    stable_id: str,
    on_date: Optional[date] = Query(default=None, alias="date"),
    limit: int = Query(default=200, ge=1, le=1000),
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    if db.query(Stable.id).filter(Stable.id == stable_id).first() is None:
        raise NotFound("Stable", stable_id)
    if not access.can_access_stable(stable_id):
        raise Forbidden("You do not have permission to access this stable")
    entries = list_stable_history(db, stable_id, on_date=on_date, limit=limit)
    return {"stable_id": stable_id, "entries": [serialize_entry(e) for e in entries]}
