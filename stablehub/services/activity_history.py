"""
Activity history recorder.

One row per (routine instance, step, horse) holding what was done and the
feeding, medication and blanket instructions as they stood at execution time.
Re-completing a step updates the existing rows in place.
"""
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import (
    ActivityHistoryEntry,
    Horse,
    HorseFeeding,
    HorseMedication,
    RoutineInstance,
    RoutineTemplate,
)
from ..schemas.routines import HorseStepProgress, RoutineStep, StepProgress
from .horse_resolver import resolve_step_horses


log = structlog.get_logger(__name__)


def feeding_context(db: Session, horse_id: str, stable_id: str) -> Optional[Dict[str, Any]]:
    feeding = (
        db.query(HorseFeeding)
        .filter(
            HorseFeeding.horse_id == horse_id,
            HorseFeeding.stable_id == stable_id,
            HorseFeeding.is_active.is_(True),
        )
        .first()
    )
    if feeding is None:
        return None
    return {
        "feed_type_name": feeding.feed_type_name or "Unknown feed",
        "quantity": feeding.quantity or 0,
        "quantity_measure": feeding.quantity_measure or "portion",
        "special_instructions": feeding.special_instructions,
    }


def medication_context(db: Session, horse_id: str) -> Optional[Dict[str, Any]]:
    medication = (
        db.query(HorseMedication)
        .filter(HorseMedication.horse_id == horse_id, HorseMedication.is_active.is_(True))
        .first()
    )
    if medication is None:
        return None
    return {
        "medication_name": medication.medication_name or "Unknown medication",
        "dosage": medication.dosage or "",
        "administration_method": medication.administration_method or "oral",
        "notes": medication.notes,
        "is_required": medication.is_required is not False,
    }


def blanket_context(horse: Optional[Horse]) -> Optional[Dict[str, Any]]:
    if horse is None or not (horse.blanket_info or horse.current_blanket):
        return None
    info = horse.blanket_info or {}
    return {
        "current_blanket": horse.current_blanket,
        "recommended_action": info.get("recommended_action") or "none",
        "target_blanket": info.get("target_blanket"),
        "reason": info.get("reason"),
    }


def _snapshots(
    db: Session,
    step: RoutineStep,
    stable_id: str,
    horse: Optional[Horse],
    horse_id: str,
    progress: Optional[HorseStepProgress],
    skipped: bool,
) -> Dict[str, Optional[Dict[str, Any]]]:
    feeding = medication = blanket = horse_context = None

    if step.show_feeding:
        ctx = feeding_context(db, horse_id, stable_id)
        if ctx:
            confirmed = progress.feeding_confirmed if progress and progress.feeding_confirmed is not None else True
            feeding = {"instructions": ctx, "confirmed": confirmed}

    if step.show_medication:
        ctx = medication_context(db, horse_id)
        if ctx:
            given = progress.medication_given if progress and progress.medication_given is not None else not skipped
            med_skipped = progress.medication_skipped if progress and progress.medication_skipped is not None else skipped
            medication = {
                "instructions": ctx,
                "given": given,
                "skipped": med_skipped,
                "skip_reason": progress.skip_reason if progress else None,
            }

    if step.show_blanket_status:
        ctx = blanket_context(horse)
        if ctx:
            action = progress.blanket_action.value if progress and progress.blanket_action else "unchanged"
            blanket = {"instructions": ctx, "action": action}

    if step.show_special_instructions:
        horse_context = {
            "special_instructions": horse.special_instructions if horse else None,
            "notes": progress.notes if progress else None,
        }

    return {
        "feeding_snapshot": feeding,
        "medication_snapshot": medication,
        "blanket_snapshot": blanket,
        "horse_context_snapshot": horse_context,
    }


def find_existing_entry(db: Session, instance_id: str, step_id: str, horse_id: str) -> Optional[ActivityHistoryEntry]:
    return (
        db.query(ActivityHistoryEntry)
        .filter(
            ActivityHistoryEntry.routine_instance_id == instance_id,
            ActivityHistoryEntry.routine_step_id == step_id,
            ActivityHistoryEntry.horse_id == horse_id,
        )
        .first()
    )


def record_step_history(
    db: Session,
    instance: RoutineInstance,
    template: RoutineTemplate,
    step: RoutineStep,
    step_progress: StepProgress,
    executed_by: str,
    executed_by_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[ActivityHistoryEntry]:
    """
    Write history for every horse the step resolves to right now.

    Args:
        db: Database session (flushed, caller commits)
        instance: Routine instance the step belongs to
        template: Live routine template
        step: Decoded step
        step_progress: Decoded progress of that step
        executed_by: User ID
        executed_by_name: Display name snapshot
        now: Execution timestamp

    Returns:
        Entries created or updated; empty when the step has no horses
    """
    horses = resolve_step_horses(db, step, instance.stable_id)
    if not horses:
        return []

    now = now or datetime.now(timezone.utc)
    horse_rows = {
        h.id: h for h in db.query(Horse).filter(Horse.id.in_([r.horse_id for r in horses])).all()
    }

    written: List[ActivityHistoryEntry] = []
    pending: List[ActivityHistoryEntry] = []
    for resolved in horses:
        progress = step_progress.horse_progress.get(resolved.horse_id)
        skipped = bool(progress and progress.skipped)
        execution_status = "skipped" if skipped else "completed"
        snapshots = _snapshots(
            db, step, instance.stable_id, horse_rows.get(resolved.horse_id), resolved.horse_id, progress, skipped
        )
        skip_reason = progress.skip_reason if progress else None
        notes = progress.notes if progress else None
        photo_urls = list(progress.photo_urls) if progress and progress.photo_urls else None

        existing = find_existing_entry(db, instance.id, step.id, resolved.horse_id)
        if existing is not None:
            existing.execution_status = execution_status
            existing.executed_at = now
            existing.executed_by = executed_by
            existing.executed_by_name = executed_by_name
            existing.skip_reason = skip_reason
            existing.notes = notes
            existing.photo_urls = photo_urls
            for key, value in snapshots.items():
                setattr(existing, key, value)
            existing.version = (existing.version or 1) + 1
            existing.updated_at = now
            written.append(existing)
            continue

        entry = ActivityHistoryEntry(
            horse_id=resolved.horse_id,
            routine_instance_id=instance.id,
            routine_step_id=step.id,
            organization_id=instance.organization_id,
            stable_id=instance.stable_id,
            horse_name=resolved.name,
            stable_name=instance.stable_name,
            routine_template_name=template.name,
            routine_type=template.type,
            step_name=step.name,
            category=step.category.value,
            step_order=step.order,
            execution_status=execution_status,
            executed_at=now,
            executed_by=executed_by,
            executed_by_name=executed_by_name,
            scheduled_date=instance.scheduled_date,
            skip_reason=skip_reason,
            notes=notes,
            photo_urls=photo_urls,
            version=1,
            created_at=now,
            **snapshots,
        )
        pending.append(entry)
        written.append(entry)

    for i in range(0, len(pending), settings.store_batch_size):
        db.add_all(pending[i:i + settings.store_batch_size])
        db.flush()

    log.info(
        "step_history_recorded",
        routine_instance_id=instance.id,
        step_id=step.id,
        created=len(pending),
        updated=len(written) - len(pending),
    )
    return written


def list_horse_history(
    db: Session,
    horse_id: str,
    cutoff: Optional[date] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    category: Optional[str] = None,
    limit: int = 100,
) -> List[ActivityHistoryEntry]:
    query = db.query(ActivityHistoryEntry).filter(ActivityHistoryEntry.horse_id == horse_id)
    lower = max(d for d in (cutoff, start_date) if d) if (cutoff or start_date) else None
    if lower:
        query = query.filter(ActivityHistoryEntry.scheduled_date >= lower)
    if end_date:
        query = query.filter(ActivityHistoryEntry.scheduled_date <= end_date)
    if category:
        query = query.filter(ActivityHistoryEntry.category == category)
    return (
        query.order_by(ActivityHistoryEntry.scheduled_date.desc(), ActivityHistoryEntry.step_order.asc())
        .limit(limit)
        .all()
    )


def list_stable_history(db: Session, stable_id: str, on_date: Optional[date] = None, limit: int = 200) -> List[ActivityHistoryEntry]:
    query = db.query(ActivityHistoryEntry).filter(ActivityHistoryEntry.stable_id == stable_id)
    if on_date:
        query = query.filter(ActivityHistoryEntry.scheduled_date == on_date)
    return (
        query.order_by(ActivityHistoryEntry.scheduled_date.desc(), ActivityHistoryEntry.step_order.asc())
        .limit(limit)
        .all()
    )


def serialize_entry(entry: ActivityHistoryEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "horse_id": entry.horse_id,
        "horse_name": entry.horse_name,
        "routine_instance_id": entry.routine_instance_id,
        "routine_step_id": entry.routine_step_id,
        "organization_id": entry.organization_id,
        "stable_id": entry.stable_id,
        "stable_name": entry.stable_name,
        "routine_template_name": entry.routine_template_name,
        "routine_type": entry.routine_type,
        "step_name": entry.step_name,
        "category": entry.category,
        "step_order": entry.step_order,
        "execution_status": entry.execution_status,
        "executed_at": entry.executed_at.isoformat() if entry.executed_at else None,
        "executed_by": entry.executed_by,
        "executed_by_name": entry.executed_by_name,
        "scheduled_date": entry.scheduled_date.isoformat(),
        "skip_reason": entry.skip_reason,
        "notes": entry.notes,
        "photo_urls": entry.photo_urls or [],
        "feeding_snapshot": entry.feeding_snapshot,
        "medication_snapshot": entry.medication_snapshot,
        "blanket_snapshot": entry.blanket_snapshot,
        "horse_context_snapshot": entry.horse_context_snapshot,
        "version": entry.version,
    }


def list_instance_history_by_step(db: Session, instance_id: str) -> List[Dict[str, Any]]:
    entries = (
        db.query(ActivityHistoryEntry)
        .filter(ActivityHistoryEntry.routine_instance_id == instance_id)
        .order_by(ActivityHistoryEntry.step_order.asc(), ActivityHistoryEntry.horse_name.asc())
        .all()
    )
    grouped: Dict[str, Dict[str, Any]] = {}
    for entry in entries:
        group = grouped.setdefault(
            entry.routine_step_id,
            {
                "step_id": entry.routine_step_id,
                "step_name": entry.step_name,
                "step_order": entry.step_order,
                "category": entry.category,
                "entries": [],
            },
        )
        group["entries"].append(serialize_entry(entry))
    return sorted(grouped.values(), key=lambda g: g["step_order"])
