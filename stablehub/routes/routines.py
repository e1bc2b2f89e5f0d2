from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_access
from ..db import get_db
from ..errors import Forbidden, InvalidState, NotFound, ValidationFailed
from ..models.models import RoutineInstance, RoutineTemplate, Stable
from ..schemas.routines import (
    AssignInstance,
    AssignmentMode,
    CancelInstance,
    CompleteInstance,
    InstanceStatus,
    RoutineInstanceBulkCreate,
    RoutineInstanceCreate,
    StartInstance,
    StepProgressUpdate,
    decode_progress,
    encode,
)
from ..services import routine_instances as lifecycle
from ..services.access import AccessResolver
from ..services.activity_history import list_instance_history_by_step
from ..services.horse_resolver import resolve_step_horses
from ..services.schedule_expander import expand_range


router = APIRouter(prefix="/routines", tags=["routines"])


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _serialize_instance(instance: RoutineInstance) -> Dict[str, Any]:
    return {
        "id": instance.id,
        "template_id": instance.template_id,
        "template_name": instance.template_name,
        "organization_id": instance.organization_id,
        "stable_id": instance.stable_id,
        "stable_name": instance.stable_name,
        "scheduled_date": instance.scheduled_date.isoformat(),
        "scheduled_start_time": instance.scheduled_start_time,
        "estimated_duration": instance.estimated_duration,
        "status": instance.status,
        "assigned_to": instance.assigned_to,
        "assigned_to_name": instance.assigned_to_name,
        "assignment_type": instance.assignment_type,
        "assigned_at": _iso(instance.assigned_at),
        "assigned_by": instance.assigned_by,
        "current_step_id": instance.current_step_id,
        "current_step_order": instance.current_step_order,
        "progress": encode(decode_progress(instance.progress, instance.id)),
        "points_value": instance.points_value,
        "points_awarded": instance.points_awarded,
        "is_holiday_shift": instance.is_holiday_shift,
        "daily_notes_acknowledged": instance.daily_notes_acknowledged,
        "daily_notes_acknowledged_at": _iso(instance.daily_notes_acknowledged_at),
        "started_at": _iso(instance.started_at),
        "started_by": instance.started_by,
        "started_by_name": instance.started_by_name,
        "completed_at": _iso(instance.completed_at),
        "completed_by": instance.completed_by,
        "completed_by_name": instance.completed_by_name,
        "notes": instance.notes,
        "cancelled_at": _iso(instance.cancelled_at),
        "cancelled_by": instance.cancelled_by,
        "cancellation_reason": instance.cancellation_reason,
        "created_at": _iso(instance.created_at),
        "created_by": instance.created_by,
        "updated_at": _iso(instance.updated_at),
        "version": instance.version,
    }


def _load_for_read(db: Session, instance_id: str, access: AccessResolver) -> RoutineInstance:
    instance = lifecycle.get_instance(db, instance_id)
    if not access.can_access_stable(instance.stable_id):
        raise Forbidden("You do not have permission to access this routine")
    return instance


@router.post("/instances", status_code=201)
def create_instance(
    payload: RoutineInstanceCreate,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    instance = lifecycle.create_instance(
        db,
        access,
        template_id=payload.template_id,
        stable_id=payload.stable_id,
        scheduled_date=payload.scheduled_date,
        scheduled_start_time=payload.scheduled_start_time,
        assigned_to=payload.assigned_to,
    )
    return _serialize_instance(instance)


@router.post("/instances/bulk", status_code=201)
def bulk_create_instances(
    payload: RoutineInstanceBulkCreate,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    """Create one instance per matching date without persisting a schedule."""
    stable = db.query(Stable).filter(Stable.id == payload.stable_id).first()
    if not stable:
        raise NotFound("Stable", payload.stable_id)
    if not access.can_access_stable(stable.id):
        raise Forbidden("You do not have permission to create routines in this stable")
    template = lifecycle.get_template(db, payload.template_id)
    if not template.is_active:
        raise InvalidState("Routine template is not active")
    if template.organization_id != stable.organization_id:
        raise ValidationFailed("Routine template belongs to another organization")

    ids = expand_range(
        db,
        template,
        stable,
        payload.start_date,
        payload.end_date,
        payload.repeat_days,
        AssignmentMode(payload.assignment_mode),
        created_by=access.user_id,
        scheduled_start_time=payload.scheduled_start_time,
    )
    return {"created_count": len(ids), "instance_ids": ids}


@router.get("/instances")
def list_instances(
    stable_id: str,
    on_date: Optional[date] = Query(default=None, alias="date"),
    status: Optional[InstanceStatus] = None,
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    if not access.can_access_stable(stable_id):
        raise Forbidden("You do not have permission to access this stable")
    query = db.query(RoutineInstance).filter(RoutineInstance.stable_id == stable_id)
    if on_date:
        query = query.filter(RoutineInstance.scheduled_date == on_date)
    if status:
        query = query.filter(RoutineInstance.status == status.value)
    instances = (
        query.order_by(RoutineInstance.scheduled_date.desc(), RoutineInstance.scheduled_start_time.asc())
        .limit(limit)
        .all()
    )
    return {"instances": [_serialize_instance(i) for i in instances]}


@router.get("/instances/{instance_id}")
def get_instance(
    instance_id: str,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    instance = _load_for_read(db, instance_id, access)
    payload = _serialize_instance(instance)
    template = db.get(RoutineTemplate, instance.template_id)
    if template is None:
        payload["template_snapshot"] = None
        return payload
    snapshot = lifecycle.template_snapshot(template)
    payload["template_snapshot"] = encode(snapshot)
    # Display-time resolution; history uses a fresh resolution at completion
    payload["step_horses"] = {
        step.id: [{"id": h.horse_id, "name": h.name} for h in resolve_step_horses(db, step, instance.stable_id)]
        for step in snapshot.steps
    }
    return payload


@router.get("/instances/{instance_id}/activity-history")
def get_instance_history(
    instance_id: str,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    instance = _load_for_read(db, instance_id, access)
    return {"routine_instance_id": instance.id, "steps": list_instance_history_by_step(db, instance.id)}


@router.post("/instances/{instance_id}/start")
def start_instance(
    instance_id: str,
    payload: Optional[StartInstance] = None,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    instance = lifecycle.get_instance(db, instance_id)
    instance = lifecycle.start_instance(db, instance, access, payload or StartInstance())
    return _serialize_instance(instance)


@router.put("/instances/{instance_id}/progress")
def update_progress(
    instance_id: str,
    payload: StepProgressUpdate,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    instance = lifecycle.get_instance(db, instance_id)
    instance = lifecycle.update_step_progress(db, instance, access, payload)
    return _serialize_instance(instance)


@router.post("/instances/{instance_id}/complete")
def complete_instance(
    instance_id: str,
    payload: Optional[CompleteInstance] = None,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    instance = lifecycle.get_instance(db, instance_id)
    instance = lifecycle.complete_instance(db, instance, access, payload or CompleteInstance())
    return _serialize_instance(instance)


@router.post("/instances/{instance_id}/cancel")
def cancel_instance(
    instance_id: str,
    payload: Optional[CancelInstance] = None,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    instance = lifecycle.get_instance(db, instance_id)
    instance = lifecycle.cancel_instance(db, instance, access, payload or CancelInstance())
    return _serialize_instance(instance)


@router.post("/instances/{instance_id}/restart")
def restart_instance(
    instance_id: str,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    instance = lifecycle.get_instance(db, instance_id)
    instance = lifecycle.restart_instance(db, instance, access)
    return _serialize_instance(instance)


@router.post("/instances/{instance_id}/assign")
def assign_instance(
    instance_id: str,
    payload: AssignInstance,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    instance = lifecycle.get_instance(db, instance_id)
    instance = lifecycle.assign_instance(db, instance, access, payload)
    return _serialize_instance(instance)


@router.delete("/instances/{instance_id}")
def delete_instance(
    instance_id: str,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    lifecycle.delete_instance(db, instance_id, access)
    return {"status": "ok"}
