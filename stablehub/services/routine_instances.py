"""
Routine instance lifecycle.

scheduled -> started -> in_progress -> completed
scheduled|started|in_progress -> cancelled
cancelled -> scheduled (restart)

Every operation checks access through the request's AccessResolver, moves the
instance along VALID_TRANSITIONS only, writes an audit row in the same
transaction and commits. Activity history, notifications and selection
entries are written afterwards and never fail the operation.
"""
from datetime import date, datetime, timezone
from typing import Dict, List, Optional

import structlog
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..errors import Conflict, Forbidden, InvalidState, NotFound, ValidationFailed
from ..models.models import RoutineInstance, RoutineTemplate, Stable, User
from ..schemas.routines import (
    AssignInstance,
    CancelInstance,
    CompleteInstance,
    HorseStepProgress,
    InstanceStatus,
    RoutineProgress,
    RoutineStep,
    StartInstance,
    StepProgress,
    StepProgressUpdate,
    StepStatus,
    TemplateSnapshot,
    decode_progress,
    decode_steps,
    encode,
)
from .access import AccessResolver
from .activity_history import record_step_history
from .audit import create_audit_log
from .horse_resolver import resolve_step_horses
from .notifications import organization_admin_ids, send_routine_notification
from .schedule_expander import build_instance, validate_assignees
from .selection_process import current_turn_user_id, get_active_selection_process, record_selection_entry
from .users import user_label


log = structlog.get_logger(__name__)

VALID_TRANSITIONS: Dict[InstanceStatus, set] = {
    InstanceStatus.scheduled: {InstanceStatus.started, InstanceStatus.cancelled},
    InstanceStatus.started: {InstanceStatus.in_progress, InstanceStatus.completed, InstanceStatus.cancelled},
    InstanceStatus.in_progress: {InstanceStatus.in_progress, InstanceStatus.completed, InstanceStatus.cancelled},
    InstanceStatus.completed: set(),
    InstanceStatus.cancelled: {InstanceStatus.scheduled},
}

DONE_STEP_STATUSES = {StepStatus.completed, StepStatus.skipped}


def can_transition(current: str, target: InstanceStatus) -> bool:
    return target in VALID_TRANSITIONS.get(InstanceStatus(current), set())


def _transition(instance: RoutineInstance, target: InstanceStatus, action: str) -> None:
    if not can_transition(instance.status, target):
        raise InvalidState(f"Cannot {action} routine with status: {instance.status}")
    instance.status = target.value


def percent_complete(steps_completed: int, steps_total: int) -> int:
    """Integer percent, halves rounded up."""
    if steps_total <= 0:
        return 0
    return (200 * steps_completed + steps_total) // (2 * steps_total)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _check_version(instance: RoutineInstance, expected_version: Optional[int]) -> None:
    if expected_version is not None and expected_version != instance.version:
        raise Conflict(
            f"Routine instance is at version {instance.version}, expected {expected_version}"
        )


def _require_stable_access(access: AccessResolver, stable_id: str, action: str) -> None:
    if not access.can_access_stable(stable_id):
        raise Forbidden(f"You do not have permission to {action} this routine")


def _audit(db: Session, instance: RoutineInstance, action: str, actor: User, changes=None, context=None) -> None:
    ctx = {"stable_id": instance.stable_id, "organization_id": instance.organization_id}
    ctx.update(context or {})
    create_audit_log(
        db,
        entity_type="routine_instance",
        entity_id=instance.id,
        action=action,
        actor_id=actor.id,
        actor_role=actor.system_role,
        source="api",
        changes_json=changes,
        context=ctx,
    )


def get_instance(db: Session, instance_id: str) -> RoutineInstance:
    instance = db.query(RoutineInstance).filter(RoutineInstance.id == instance_id).first()
    if instance is None:
        raise NotFound("Routine instance", instance_id)
    return instance


def get_template(db: Session, template_id: str) -> RoutineTemplate:
    template = db.query(RoutineTemplate).filter(RoutineTemplate.id == template_id).first()
    if template is None:
        raise NotFound("Routine template", template_id)
    return template


def template_snapshot(template: RoutineTemplate) -> TemplateSnapshot:
    return TemplateSnapshot(
        id=template.id,
        name=template.name,
        type=template.type,
        requires_notes_read=template.requires_notes_read,
        allow_skip_steps=template.allow_skip_steps,
        points_value=template.points_value,
        steps=decode_steps(template.steps, template.id),
    )


def _first_pending_step(steps: List[RoutineStep], progress: RoutineProgress) -> Optional[RoutineStep]:
    for step in steps:
        sp = progress.step_progress.get(step.id)
        if sp is None or sp.status == StepStatus.pending:
            return step
    return steps[0] if steps else None


# Create
def create_instance(
    db: Session,
    access: AccessResolver,
    template_id: str,
    stable_id: str,
    scheduled_date: date,
    scheduled_start_time: Optional[str] = None,
    assigned_to: Optional[str] = None,
) -> RoutineInstance:
    stable = db.query(Stable).filter(Stable.id == stable_id).first()
    if stable is None:
        raise NotFound("Stable", stable_id)
    if not access.can_access_stable(stable_id):
        raise Forbidden("You do not have permission to create routines in this stable")
    template = get_template(db, template_id)
    if not template.is_active:
        raise InvalidState("Routine template is not active")
    if template.organization_id != stable.organization_id:
        raise ValidationFailed("Routine template belongs to another organization")
    if template.stable_id and template.stable_id != stable.id:
        raise ValidationFailed("Routine template belongs to another stable")

    names = validate_assignees(db, stable, [assigned_to]) if assigned_to else {}
    instance = build_instance(
        template,
        decode_steps(template.steps, template.id),
        stable,
        scheduled_date,
        scheduled_start_time=scheduled_start_time,
        assigned_to=assigned_to,
        assigned_to_name=names.get(assigned_to) if assigned_to else None,
        assignment_type="manual" if assigned_to else "unassigned",
        created_by=access.user_id,
    )
    db.add(instance)
    db.flush()
    _audit(db, instance, "CREATE", access.user, context={"template_id": template.id})
    db.commit()
    db.refresh(instance)
    return instance


# Start
def start_instance(db: Session, instance: RoutineInstance, access: AccessResolver, payload: StartInstance) -> RoutineInstance:
    _require_stable_access(access, instance.stable_id, "start")
    _transition(instance, InstanceStatus.started, "start")

    user = access.user
    now = _now()
    if not instance.assigned_to:
        instance.assigned_to = user.id
        instance.assigned_to_name = user_label(user)
        instance.assignment_type = "self"
        instance.assigned_at = now
        instance.assigned_by = user.id

    template = get_template(db, instance.template_id)
    steps = decode_steps(template.steps, template.id)
    first = _first_pending_step(steps, decode_progress(instance.progress, instance.id))

    instance.started_at = now
    instance.started_by = user.id
    instance.started_by_name = user_label(user)
    instance.daily_notes_acknowledged = payload.daily_notes_acknowledged
    instance.daily_notes_acknowledged_at = now if payload.daily_notes_acknowledged else None
    instance.current_step_id = first.id if first else None
    instance.current_step_order = 1
    instance.updated_at = now
    instance.updated_by = user.id

    _audit(db, instance, "START", user)
    db.commit()
    db.refresh(instance)
    return instance


# Progress
def _merge_horse_updates(
    step_progress: StepProgress,
    payload: StepProgressUpdate,
    horse_names: Dict[str, str],
    user: User,
    now: datetime,
) -> None:
    for horse_id, update in payload.horse_updates.items():
        current = step_progress.horse_progress.get(horse_id) or HorseStepProgress(
            horse_id=horse_id, horse_name=horse_names.get(horse_id)
        )
        merged = HorseStepProgress.model_validate(
            {**current.model_dump(), **update.model_dump(exclude_unset=True, exclude_none=True)}
        )
        if update.completed or update.skipped:
            merged.completed_at = now
            merged.completed_by = user.id
        step_progress.horse_progress[horse_id] = merged


def apply_step_progress(
    progress: RoutineProgress,
    steps: List[RoutineStep],
    step: RoutineStep,
    payload: StepProgressUpdate,
    resolved_horse_ids: List[str],
    horse_names: Dict[str, str],
    user: User,
    now: datetime,
) -> StepProgress:
    """
    Merge one progress update into the decoded progress document.

    Recomputes the step's horse counters and the instance's step counters.
    Only steps that exist on the template count, so steps_completed never
    exceeds steps_total.
    """
    step_progress = progress.step_progress.get(step.id) or StepProgress(step_id=step.id)

    if payload.status is not None:
        step_progress.status = payload.status
        if payload.status == StepStatus.in_progress and step_progress.started_at is None:
            step_progress.started_at = now
        if payload.status in DONE_STEP_STATUSES:
            step_progress.completed_at = now
    if payload.general_notes is not None:
        step_progress.general_notes = payload.general_notes
    if payload.photo_urls is not None:
        step_progress.photo_urls = list(payload.photo_urls)

    _merge_horse_updates(step_progress, payload, horse_names, user, now)

    horse_ids = set(resolved_horse_ids) | set(step_progress.horse_progress.keys())
    step_progress.horses_total = len(horse_ids)
    step_progress.horses_completed = sum(
        1 for hp in step_progress.horse_progress.values() if hp.completed or hp.skipped
    )
    progress.step_progress[step.id] = step_progress

    step_ids = [s.id for s in steps]
    progress.steps_total = len(step_ids)
    progress.steps_completed = sum(
        1 for sid in step_ids
        if sid in progress.step_progress and progress.step_progress[sid].status in DONE_STEP_STATUSES
    )
    progress.percent_complete = percent_complete(progress.steps_completed, progress.steps_total)
    return step_progress


def update_step_progress(
    db: Session,
    instance: RoutineInstance,
    access: AccessResolver,
    payload: StepProgressUpdate,
) -> RoutineInstance:
    _require_stable_access(access, instance.stable_id, "update")
    _check_version(instance, payload.expected_version)
    if instance.status not in (InstanceStatus.started.value, InstanceStatus.in_progress.value):
        raise InvalidState(f"Cannot update progress for routine with status: {instance.status}")

    template = get_template(db, instance.template_id)
    steps = decode_steps(template.steps, template.id)
    step = next((s for s in steps if s.id == payload.step_id), None)
    if step is None:
        raise ValidationFailed(
            "Unknown step for this routine",
            details=[{"field": "step_id", "message": f"step {payload.step_id} is not part of the template"}],
        )
    if payload.daily_notes_acknowledged and not instance.daily_notes_acknowledged:
        instance.daily_notes_acknowledged = True
        instance.daily_notes_acknowledged_at = _now()
    if template.requires_notes_read and not instance.daily_notes_acknowledged:
        raise InvalidState("Daily notes must be acknowledged before working on steps")
    if payload.status == StepStatus.skipped and not template.allow_skip_steps:
        raise InvalidState("This routine does not allow skipping steps")

    user = access.user
    now = _now()
    resolved = resolve_step_horses(db, step, instance.stable_id)
    progress = decode_progress(instance.progress, instance.id)
    step_progress = apply_step_progress(
        progress,
        steps,
        step,
        payload,
        [h.horse_id for h in resolved],
        {h.horse_id: h.name for h in resolved},
        user,
        now,
    )

    _transition(instance, InstanceStatus.in_progress, "update progress for")
    instance.progress = encode(progress)
    instance.current_step_id = step.id
    instance.current_step_order = step.order
    instance.updated_at = now
    instance.updated_by = user.id

    _audit(
        db,
        instance,
        "PROGRESS",
        user,
        changes={"step_id": step.id, "step_status": step_progress.status.value},
        context={"percent_complete": progress.percent_complete},
    )
    db.commit()

    if step_progress.status in DONE_STEP_STATUSES:
        _record_history_safely(db, instance, template, step, step_progress, user)

    db.refresh(instance)
    return instance


def _record_history_safely(
    db: Session,
    instance: RoutineInstance,
    template: RoutineTemplate,
    step: RoutineStep,
    step_progress: StepProgress,
    user: User,
) -> None:
    try:
        entries = record_step_history(db, instance, template, step, step_progress, user.id, user_label(user))
        db.commit()
    except Exception:
        db.rollback()
        log.exception(
            "activity_history_failed",
            routine_instance_id=instance.id,
            step_id=step.id,
        )
        return

    skipped_required = [
        e.horse_name for e in entries
        if e.medication_snapshot
        and e.medication_snapshot.get("skipped")
        and e.medication_snapshot.get("instructions", {}).get("is_required")
    ]
    if skipped_required:
        send_routine_notification(
            db,
            organization_admin_ids(db, instance.organization_id),
            "medication_skipped",
            {
                "id": instance.id,
                "template_name": instance.template_name,
                "stable_id": instance.stable_id,
                "scheduled_date": instance.scheduled_date.isoformat(),
                "step_name": step.name,
                "horses": skipped_required,
            },
        )


# Complete
def complete_instance(
    db: Session,
    instance: RoutineInstance,
    access: AccessResolver,
    payload: CompleteInstance,
) -> RoutineInstance:
    _require_stable_access(access, instance.stable_id, "complete")
    _check_version(instance, payload.expected_version)
    _transition(instance, InstanceStatus.completed, "complete")

    user = access.user
    now = _now()
    progress = decode_progress(instance.progress, instance.id)
    progress.steps_completed = progress.steps_total
    progress.percent_complete = 100
    instance.progress = encode(progress)
    instance.completed_at = now
    instance.completed_by = user.id
    instance.completed_by_name = user_label(user)
    instance.points_awarded = instance.points_value
    if payload.notes is not None:
        instance.notes = payload.notes
    instance.updated_at = now
    instance.updated_by = user.id

    _audit(db, instance, "COMPLETE", user, changes={"points_awarded": instance.points_awarded})
    db.commit()
    db.refresh(instance)
    return instance


# Cancel
def cancel_instance(
    db: Session,
    instance: RoutineInstance,
    access: AccessResolver,
    payload: CancelInstance,
) -> RoutineInstance:
    if instance.status in (InstanceStatus.completed.value, InstanceStatus.cancelled.value):
        raise InvalidState(f"Cannot cancel routine with status: {instance.status}")
    _require_stable_access(access, instance.stable_id, "cancel")
    user = access.user
    if instance.assigned_to != user.id and not access.can_manage_schedules(instance.stable_id):
        raise Forbidden("Only the assignee or a schedule manager can cancel this routine")

    _transition(instance, InstanceStatus.cancelled, "cancel")
    now = _now()
    instance.cancelled_at = now
    instance.cancelled_by = user.id
    instance.cancellation_reason = payload.cancellation_reason
    instance.updated_at = now
    instance.updated_by = user.id

    _audit(db, instance, "CANCEL", user, context={"reason": payload.cancellation_reason})
    db.commit()
    db.refresh(instance)

    if instance.assigned_to and instance.assigned_to != user.id:
        send_routine_notification(
            db,
            [instance.assigned_to],
            "cancelled",
            {
                "id": instance.id,
                "template_name": instance.template_name,
                "scheduled_date": instance.scheduled_date.isoformat(),
                "cancelled_by": user_label(user),
                "reason": payload.cancellation_reason,
            },
        )
    return instance


# Restart
def restart_instance(db: Session, instance: RoutineInstance, access: AccessResolver) -> RoutineInstance:
    _require_stable_access(access, instance.stable_id, "restart")
    if instance.status != InstanceStatus.cancelled.value:
        raise InvalidState(f"Can only restart cancelled routines. Current status: {instance.status}")
    _transition(instance, InstanceStatus.scheduled, "restart")

    user = access.user
    now = _now()
    instance.cancelled_at = None
    instance.cancelled_by = None
    instance.cancellation_reason = None
    instance.updated_at = now
    instance.updated_by = user.id

    _audit(db, instance, "RESTART", user)
    db.commit()
    db.refresh(instance)
    return instance


# Delete
def delete_instance(db: Session, instance_id: str, access: AccessResolver) -> None:
    """
    Hard delete a routine instance that has not started.

    The row is re-read under a row lock immediately before deleting; a status
    change or version bump between the check and the delete is reported as
    InvalidState.
    """
    instance = get_instance(db, instance_id)
    if not access.can_access_stable(instance.stable_id):
        raise Forbidden("You do not have permission to delete this routine")
    if not access.can_manage_schedules(instance.stable_id):
        raise Forbidden("Deleting routines requires schedule management permission")

    db.expire(instance)
    locked = (
        db.query(RoutineInstance)
        .filter(RoutineInstance.id == instance_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if locked is None:
        raise NotFound("Routine instance", instance_id)
    if locked.status != InstanceStatus.scheduled.value:
        db.rollback()
        raise InvalidState(f"Can only delete scheduled routines. Current status: {locked.status}")

    _audit(db, locked, "DELETE", access.user, changes={"status": locked.status})
    db.delete(locked)
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        raise InvalidState("Routine changed while deleting, reload and retry")


# Assign
def assign_instance(
    db: Session,
    instance: RoutineInstance,
    access: AccessResolver,
    payload: AssignInstance,
) -> RoutineInstance:
    _require_stable_access(access, instance.stable_id, "assign")

    assignee = db.query(User).filter(User.id == payload.assigned_to, User.is_active.is_(True)).first()
    if assignee is None:
        raise ValidationFailed(
            "Assignee does not exist",
            details=[{"field": "assigned_to", "message": "user not found"}],
        )
    if not AccessResolver(db, assignee).can_access_stable(instance.stable_id):
        raise ValidationFailed(
            "Assignee is not an active member with access to this stable",
            details=[{"field": "assigned_to", "message": "not an active member of this stable"}],
        )
    if instance.status != InstanceStatus.scheduled.value:
        raise InvalidState(f"Can only assign scheduled routines. Current status: {instance.status}")
    _check_version(instance, payload.expected_version)

    user = access.user
    process = get_active_selection_process(db, instance.stable_id)
    if process is not None and current_turn_user_id(process) != user.id:
        raise Forbidden("It is not your turn in the active selection process")

    now = _now()
    previous = instance.assigned_to
    instance.assigned_to = assignee.id
    instance.assigned_to_name = payload.assigned_to_name or user_label(assignee)
    instance.assignment_type = "manual"
    instance.assigned_at = now
    instance.assigned_by = user.id
    instance.updated_at = now
    instance.updated_by = user.id

    _audit(
        db,
        instance,
        "ASSIGN",
        user,
        changes={"assigned_to": {"before": previous, "after": assignee.id}},
        context={"selection_process_id": process.id if process else None},
    )
    db.commit()
    db.refresh(instance)

    if process is not None:
        try:
            record_selection_entry(db, process, instance, user)
            db.commit()
        except Exception:
            db.rollback()
            log.exception(
                "selection_entry_failed",
                selection_process_id=process.id,
                routine_instance_id=instance.id,
            )
        db.refresh(instance)

    if assignee.id != user.id:
        send_routine_notification(
            db,
            [assignee.id],
            "assigned",
            {
                "id": instance.id,
                "template_name": instance.template_name,
                "scheduled_date": instance.scheduled_date.isoformat(),
                "scheduled_start_time": instance.scheduled_start_time,
                "assigned_by": user_label(user),
            },
        )
    return instance
