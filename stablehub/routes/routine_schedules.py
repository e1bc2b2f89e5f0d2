from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_access
from ..db import get_db
from ..errors import Forbidden, InvalidState, NotFound, ValidationFailed
from ..models.models import RoutineSchedule, RoutineTemplate, Stable
from ..schemas.routines import (
    AssignmentMode,
    RepeatPattern,
    RoutineScheduleCreate,
    RoutineScheduleUpdate,
    ScheduleToggle,
)
from ..services.access import AccessResolver
from ..services.audit import create_audit_log
from ..services.schedule_expander import (
    expand_schedule,
    validate_assignees,
    validate_date_range,
    validate_repeat_pattern,
)


log = structlog.get_logger(__name__)

router = APIRouter(prefix="/routine-schedules", tags=["routine-schedules"])


def _serialize_schedule(s: RoutineSchedule) -> Dict[str, Any]:
    return {
        "id": s.id,
        "organization_id": s.organization_id,
        "stable_id": s.stable_id,
        "stable_name": s.stable_name,
        "template_id": s.template_id,
        "template_name": s.template_name,
        "template_color": s.template_color,
        "template_icon": s.template_icon,
        "name": s.name,
        "start_date": s.start_date.isoformat(),
        "end_date": s.end_date.isoformat(),
        "repeat_pattern": s.repeat_pattern,
        "repeat_days": s.repeat_days or [],
        "include_holidays": s.include_holidays,
        "scheduled_start_time": s.scheduled_start_time,
        "assignment_mode": s.assignment_mode,
        "default_assigned_to": s.default_assigned_to,
        "default_assigned_to_name": s.default_assigned_to_name,
        "custom_assignments": s.custom_assignments or {},
        "is_enabled": s.is_enabled,
        "instances_generated": s.instances_generated or 0,
        "last_generated_date": s.last_generated_date.isoformat() if s.last_generated_date else None,
        "created_at": s.created_at.isoformat() if s.created_at else None,
        "created_by": s.created_by,
        "updated_at": s.updated_at.isoformat() if s.updated_at else None,
    }


def _get_schedule(db: Session, schedule_id: str) -> RoutineSchedule:
    schedule = db.query(RoutineSchedule).filter(RoutineSchedule.id == schedule_id).first()
    if not schedule:
        raise NotFound("Routine schedule", schedule_id)
    return schedule


def _get_stable(db: Session, stable_id: str) -> Stable:
    stable = db.query(Stable).filter(Stable.id == stable_id).first()
    if not stable:
        raise NotFound("Stable", stable_id)
    return stable


def _get_template(db: Session, template_id: str) -> RoutineTemplate:
    template = db.query(RoutineTemplate).filter(RoutineTemplate.id == template_id).first()
    if not template:
        raise NotFound("Routine template", template_id)
    return template


def _require_manage(access: AccessResolver, stable_id: str) -> None:
    if not access.can_manage_schedules(stable_id):
        raise Forbidden("You do not have permission to manage schedules for this stable")


def _assignee_ids(default_assigned_to: Optional[str], custom_assignments: Optional[Dict[str, str]]):
    ids = list((custom_assignments or {}).values())
    if default_assigned_to:
        ids.append(default_assigned_to)
    return ids


def _audit(db: Session, schedule: RoutineSchedule, action: str, access: AccessResolver, changes=None) -> None:
    create_audit_log(
        db,
        entity_type="routine_schedule",
        entity_id=schedule.id,
        action=action,
        actor_id=access.user_id,
        actor_role=access.user.system_role,
        source="api",
        changes_json=changes,
        context={"stable_id": schedule.stable_id, "template_id": schedule.template_id},
    )


def _generate(db: Session, schedule: RoutineSchedule, template: RoutineTemplate, stable: Stable) -> Optional[str]:
    """Run expansion; store failures are logged and reported, invalid assignees are raised."""
    try:
        expand_schedule(db, schedule, template, stable)
    except ValidationFailed:
        db.rollback()
        raise
    except Exception as exc:
        db.rollback()
        log.error(
            "schedule_generation_failed",
            schedule_id=schedule.id,
            error=str(exc),
            exc_info=True,
        )
        return f"Instance generation failed; retry with POST /routine-schedules/{schedule.id}/generate"
    return None


@router.post("", status_code=201)
def create_schedule(
    payload: RoutineScheduleCreate,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    stable = _get_stable(db, payload.stable_id)
    if stable.organization_id != payload.organization_id:
        raise ValidationFailed("Stable belongs to another organization")
    _require_manage(access, stable.id)
    template = _get_template(db, payload.template_id)
    if template.organization_id != payload.organization_id:
        raise ValidationFailed("Routine template belongs to another organization")
    if not template.is_active:
        raise InvalidState("Routine template is not active")

    validate_date_range(payload.start_date, payload.end_date)
    validate_repeat_pattern(payload.repeat_pattern, payload.repeat_days, payload.include_holidays)
    names = validate_assignees(db, stable, _assignee_ids(payload.default_assigned_to, payload.custom_assignments))

    now = datetime.now(timezone.utc)
    schedule = RoutineSchedule(
        organization_id=payload.organization_id,
        stable_id=stable.id,
        template_id=template.id,
        name=payload.name or template.name,
        template_name=template.name,
        template_color=template.color,
        template_icon=template.icon,
        stable_name=stable.name,
        start_date=payload.start_date,
        end_date=payload.end_date,
        repeat_pattern=payload.repeat_pattern.value,
        repeat_days=payload.repeat_days,
        include_holidays=payload.include_holidays,
        scheduled_start_time=payload.scheduled_start_time or template.default_start_time,
        assignment_mode=payload.assignment_mode.value,
        default_assigned_to=payload.default_assigned_to,
        default_assigned_to_name=names.get(payload.default_assigned_to) if payload.default_assigned_to else None,
        custom_assignments=payload.custom_assignments or None,
        is_enabled=True,
        instances_generated=0,
        created_at=now,
        created_by=access.user_id,
        updated_at=now,
        updated_by=access.user_id,
    )
    db.add(schedule)
    db.flush()
    _audit(db, schedule, "CREATE", access)
    db.commit()
    db.refresh(schedule)

    error = _generate(db, schedule, template, stable)
    db.refresh(schedule)
    result = _serialize_schedule(schedule)
    result["generation_error"] = error
    return result


@router.get("")
def list_schedules(
    stable_id: str,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    if not access.can_access_stable(stable_id):
        raise Forbidden("You do not have permission to access this stable")
    schedules = (
        db.query(RoutineSchedule)
        .filter(RoutineSchedule.stable_id == stable_id)
        .order_by(RoutineSchedule.start_date.desc())
        .all()
    )
    return {"schedules": [_serialize_schedule(s) for s in schedules]}


@router.get("/{schedule_id}")
def get_schedule(
    schedule_id: str,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    schedule = _get_schedule(db, schedule_id)
    if not access.can_access_stable(schedule.stable_id):
        raise Forbidden("You do not have permission to access this schedule")
    return _serialize_schedule(schedule)


@router.put("/{schedule_id}")
def update_schedule(
    schedule_id: str,
    payload: RoutineScheduleUpdate,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    """Update a schedule. Already generated instances are left untouched."""
    schedule = _get_schedule(db, schedule_id)
    _require_manage(access, schedule.stable_id)
    stable = _get_stable(db, schedule.stable_id)

    data = payload.model_dump(exclude_unset=True)
    start_date = data.get("start_date") or schedule.start_date
    end_date = data.get("end_date") or schedule.end_date
    pattern = data.get("repeat_pattern") or RepeatPattern(schedule.repeat_pattern)
    repeat_days = data["repeat_days"] if data.get("repeat_days") is not None else (schedule.repeat_days or [])
    include_holidays = (
        data["include_holidays"] if data.get("include_holidays") is not None else schedule.include_holidays
    )
    validate_date_range(start_date, end_date)
    validate_repeat_pattern(pattern, repeat_days, include_holidays)

    default_assigned_to = data.get("default_assigned_to", schedule.default_assigned_to)
    custom_assignments = data.get("custom_assignments", schedule.custom_assignments)
    names = validate_assignees(db, stable, _assignee_ids(default_assigned_to, custom_assignments))

    before = _serialize_schedule(schedule)
    schedule.start_date = start_date
    schedule.end_date = end_date
    schedule.repeat_pattern = pattern.value
    schedule.repeat_days = repeat_days
    schedule.include_holidays = include_holidays
    if data.get("name") is not None:
        schedule.name = data["name"]
    if data.get("scheduled_start_time") is not None:
        schedule.scheduled_start_time = data["scheduled_start_time"]
    if data.get("assignment_mode") is not None:
        schedule.assignment_mode = AssignmentMode(data["assignment_mode"]).value
    schedule.default_assigned_to = default_assigned_to
    schedule.default_assigned_to_name = names.get(default_assigned_to) if default_assigned_to else None
    schedule.custom_assignments = custom_assignments or None
    schedule.updated_at = datetime.now(timezone.utc)
    schedule.updated_by = access.user_id

    after = _serialize_schedule(schedule)
    changes = {k: {"before": before[k], "after": after[k]} for k in after if k != "updated_at" and before.get(k) != after[k]}
    _audit(db, schedule, "UPDATE", access, changes=changes)
    db.commit()
    db.refresh(schedule)
    return _serialize_schedule(schedule)


@router.post("/{schedule_id}/toggle")
def toggle_schedule(
    schedule_id: str,
    payload: ScheduleToggle,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    schedule = _get_schedule(db, schedule_id)
    _require_manage(access, schedule.stable_id)
    schedule.is_enabled = payload.is_enabled
    schedule.updated_at = datetime.now(timezone.utc)
    schedule.updated_by = access.user_id
    _audit(db, schedule, "ENABLE" if payload.is_enabled else "DISABLE", access)
    db.commit()
    db.refresh(schedule)
    return _serialize_schedule(schedule)


@router.post("/{schedule_id}/generate")
def generate_instances(
    schedule_id: str,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    """Re-run expansion; dates that already have an instance are skipped."""
    schedule = _get_schedule(db, schedule_id)
    _require_manage(access, schedule.stable_id)
    if not schedule.is_enabled:
        raise InvalidState("Schedule is disabled")
    template = _get_template(db, schedule.template_id)
    if not template.is_active:
        raise InvalidState("Routine template is not active")
    stable = _get_stable(db, schedule.stable_id)

    before = schedule.instances_generated or 0
    error = _generate(db, schedule, template, stable)
    db.refresh(schedule)
    result = _serialize_schedule(schedule)
    result["created"] = (schedule.instances_generated or 0) - before
    result["generation_error"] = error
    return result


@router.delete("/{schedule_id}")
def delete_schedule(
    schedule_id: str,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    """Hard delete. Instances reference the template, not the schedule, and are kept."""
    schedule = _get_schedule(db, schedule_id)
    _require_manage(access, schedule.stable_id)
    _audit(db, schedule, "DELETE", access)
    db.delete(schedule)
    db.commit()
    return {"status": "ok"}
