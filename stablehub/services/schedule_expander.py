"""
Expand a recurring routine schedule into dated routine instances.

Instance ids for schedule-driven expansion are derived from (schedule id,
date), so re-running an expansion after a partial failure only creates the
dates that are still missing.
"""
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set, Tuple

import structlog
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import ValidationFailed
from ..models.models import Holiday, RoutineInstance, RoutineSchedule, RoutineTemplate, Stable, User
from ..schemas.routines import (
    AssignmentMode,
    RepeatPattern,
    RoutineProgress,
    RoutineStep,
    StepProgress,
    decode_steps,
    encode,
)
from .access import AccessResolver


log = structlog.get_logger(__name__)

INSTANCE_NAMESPACE = uuid.UUID("5b0c8a8e-3f0e-4c53-9a43-8f6f3c1d2e71")

WEEKDAYS = {1, 2, 3, 4, 5}


def weekday_index(d: date) -> int:
    """0 = Sunday .. 6 = Saturday."""
    return (d.weekday() + 1) % 7


def iter_dates(start: date, end: date) -> Iterable[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def load_holidays(db: Session, organization_id: str, start: date, end: date) -> Set[date]:
    rows = (
        db.query(Holiday.holiday_date)
        .filter(
            Holiday.holiday_date >= start,
            Holiday.holiday_date <= end,
            or_(Holiday.organization_id == organization_id, Holiday.organization_id.is_(None)),
        )
        .all()
    )
    return {r[0] for r in rows}


def scheduled_dates(
    pattern: RepeatPattern,
    start: date,
    end: date,
    repeat_days: Optional[List[int]] = None,
    include_holidays: bool = False,
    holidays: Optional[Set[date]] = None,
) -> List[date]:
    """
    Dates from start to end inclusive that the repeat pattern keeps.

    Args:
        pattern: daily|weekdays|weekly|custom
        start: First date
        end: Last date (inclusive)
        repeat_days: Weekdays for custom patterns, 0 = Sunday
        include_holidays: Custom patterns also keep holidays
        holidays: Recognized holiday dates

    Returns:
        Sorted list of dates
    """
    days = set(repeat_days or [])
    holidays = holidays or set()
    kept = []
    for d in iter_dates(start, end):
        weekday = weekday_index(d)
        if pattern == RepeatPattern.daily:
            keep = True
        elif pattern == RepeatPattern.weekdays:
            keep = weekday in WEEKDAYS
        elif pattern == RepeatPattern.weekly:
            keep = weekday == weekday_index(start)
        else:
            keep = weekday in days or (include_holidays and d in holidays)
        if keep:
            kept.append(d)
    return kept


def validate_date_range(start: date, end: date) -> None:
    if end < start:
        raise ValidationFailed(
            "end_date must not be before start_date",
            details=[{"field": "end_date", "message": "must not be before start_date"}],
        )
    span = (end - start).days + 1
    if span > settings.max_expansion_days:
        raise ValidationFailed(
            f"Date range of {span} days exceeds the maximum of {settings.max_expansion_days}",
            details=[{"field": "end_date", "message": "date range too long"}],
        )


def validate_repeat_pattern(pattern: RepeatPattern, repeat_days: Optional[List[int]], include_holidays: bool) -> None:
    if pattern == RepeatPattern.custom and not repeat_days and not include_holidays:
        raise ValidationFailed(
            "Custom repeat pattern requires repeat_days or include_holidays",
            details=[{"field": "repeat_days", "message": "required for custom pattern"}],
        )


def validate_assignees(db: Session, stable: Stable, user_ids: Iterable[str]) -> Dict[str, str]:
    """
    Every referenced user must exist and be an active member with access to the stable.

    Returns:
        Map of user id to display name

    Raises:
        ValidationFailed: listing every rejected user
    """
    names: Dict[str, str] = {}
    issues = []
    for user_id in dict.fromkeys(u for u in user_ids if u):
        user = db.query(User).filter(User.id == user_id, User.is_active.is_(True)).first()
        if user is None:
            issues.append({"user_id": user_id, "message": "user does not exist"})
            continue
        if not AccessResolver(db, user).can_access_stable(stable.id):
            issues.append({"user_id": user_id, "message": "user is not an active member with access to this stable"})
            continue
        names[user_id] = user.display_name or user.email
    if issues:
        raise ValidationFailed("Invalid assignees for this stable", details=issues)
    return names


def resolve_assignment(
    mode: AssignmentMode,
    d: date,
    default_assigned_to: Optional[str],
    custom_assignments: Optional[Dict[str, str]],
) -> Tuple[Optional[str], str]:
    """Returns (assigned_to, assignment_type) for one date."""
    if mode == AssignmentMode.auto:
        return None, "auto"
    if mode == AssignmentMode.unassigned:
        return None, "unassigned"
    custom = custom_assignments or {}
    assignee = custom.get(d.isoformat()) or custom.get(str(weekday_index(d))) or default_assigned_to
    if assignee:
        return assignee, "manual"
    return None, "unassigned"


def initial_progress(steps: List[RoutineStep]) -> dict:
    return encode(
        RoutineProgress(
            steps_completed=0,
            steps_total=len(steps),
            percent_complete=0,
            step_progress={s.id: StepProgress(step_id=s.id) for s in steps},
        )
    )


def instance_id_for(schedule_id: str, d: date) -> str:
    return str(uuid.uuid5(INSTANCE_NAMESPACE, f"{schedule_id}:{d.isoformat()}"))


def build_instance(
    template: RoutineTemplate,
    steps: List[RoutineStep],
    stable: Stable,
    scheduled_date: date,
    *,
    instance_id: Optional[str] = None,
    scheduled_start_time: Optional[str] = None,
    assigned_to: Optional[str] = None,
    assigned_to_name: Optional[str] = None,
    assignment_type: str = "unassigned",
    is_holiday_shift: bool = False,
    created_by: str = "system",
    now: Optional[datetime] = None,
) -> RoutineInstance:
    now = now or datetime.now(timezone.utc)
    return RoutineInstance(
        id=instance_id or str(uuid.uuid4()),
        template_id=template.id,
        template_name=template.name,
        organization_id=template.organization_id,
        stable_id=stable.id,
        stable_name=stable.name,
        scheduled_date=scheduled_date,
        scheduled_start_time=scheduled_start_time or template.default_start_time,
        estimated_duration=template.estimated_duration,
        status="scheduled",
        assigned_to=assigned_to,
        assigned_to_name=assigned_to_name,
        assignment_type=assignment_type,
        assigned_at=now if assigned_to else None,
        assigned_by=created_by if assigned_to else None,
        progress=initial_progress(steps),
        points_value=template.points_value,
        is_holiday_shift=is_holiday_shift,
        daily_notes_acknowledged=False,
        created_at=now,
        created_by=created_by,
        updated_at=now,
    )


def _chunks(items: List, size: int) -> Iterable[List]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _existing_ids(db: Session, ids: List[str]) -> Set[str]:
    found: Set[str] = set()
    for chunk in _chunks(ids, settings.store_batch_size):
        found.update(r[0] for r in db.query(RoutineInstance.id).filter(RoutineInstance.id.in_(chunk)).all())
    return found


def expand_schedule(
    db: Session,
    schedule: RoutineSchedule,
    template: RoutineTemplate,
    stable: Stable,
    now: Optional[datetime] = None,
) -> int:
    """
    Create the routine instances a schedule describes.

    Writes are committed in chunks of STORE_BATCH_SIZE; after each chunk the
    schedule's instances_generated and last_generated_date are advanced, so a
    failure part way through leaves an accurate count of what exists. Dates
    that already have an instance are skipped.

    Args:
        db: Database session
        schedule: Persisted schedule
        template: Its routine template
        stable: Its stable
        now: Creation timestamp for the new rows

    Returns:
        Number of instances created by this call

    Raises:
        ValidationFailed: an assignee for a date still to be created is no longer
            an active member with access to the stable; nothing is written
    """
    now = now or datetime.now(timezone.utc)
    steps = decode_steps(template.steps, template.id)
    pattern = RepeatPattern(schedule.repeat_pattern)
    holidays = load_holidays(db, schedule.organization_id, schedule.start_date, schedule.end_date)
    dates = scheduled_dates(
        pattern,
        schedule.start_date,
        schedule.end_date,
        schedule.repeat_days,
        schedule.include_holidays,
        holidays,
    )

    mode = AssignmentMode(schedule.assignment_mode)
    assignments = {d: resolve_assignment(mode, d, schedule.default_assigned_to, schedule.custom_assignments) for d in dates}
    ids = {d: instance_id_for(schedule.id, d) for d in dates}
    existing = _existing_ids(db, list(ids.values()))
    pending = [d for d in dates if ids[d] not in existing]

    # Memberships may have lapsed since the schedule was saved
    names = validate_assignees(db, stable, (assignments[d][0] for d in pending))

    created = 0
    for chunk in _chunks(pending, settings.store_batch_size):
        for d in chunk:
            assigned_to, assignment_type = assignments[d]
            db.add(
                build_instance(
                    template,
                    steps,
                    stable,
                    d,
                    instance_id=ids[d],
                    scheduled_start_time=schedule.scheduled_start_time,
                    assigned_to=assigned_to,
                    assigned_to_name=names.get(assigned_to) if assigned_to else None,
                    assignment_type=assignment_type,
                    is_holiday_shift=d in holidays,
                    created_by="system",
                    now=now,
                )
            )
        schedule.instances_generated = (schedule.instances_generated or 0) + len(chunk)
        schedule.last_generated_date = chunk[-1]
        db.commit()
        created += len(chunk)

    log.info(
        "schedule_expanded",
        schedule_id=schedule.id,
        dates=len(dates),
        created=created,
        skipped=len(dates) - len(pending),
    )
    return created


def expand_range(
    db: Session,
    template: RoutineTemplate,
    stable: Stable,
    start: date,
    end: date,
    repeat_days: Optional[List[int]],
    mode: AssignmentMode,
    created_by: str,
    scheduled_start_time: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[str]:
    """Bulk-create instances over a date range without a persisted schedule."""
    validate_date_range(start, end)
    now = now or datetime.now(timezone.utc)
    steps = decode_steps(template.steps, template.id)
    pattern = RepeatPattern.custom if repeat_days else RepeatPattern.daily
    dates = scheduled_dates(pattern, start, end, repeat_days)

    created_ids: List[str] = []
    for chunk in _chunks(dates, settings.store_batch_size):
        for d in chunk:
            _, assignment_type = resolve_assignment(mode, d, None, None)
            instance = build_instance(
                template,
                steps,
                stable,
                d,
                scheduled_start_time=scheduled_start_time,
                assignment_type=assignment_type,
                created_by=created_by,
                now=now,
            )
            db.add(instance)
            created_ids.append(instance.id)
        db.commit()
    return created_ids
