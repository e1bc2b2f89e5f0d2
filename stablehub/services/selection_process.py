from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from ..models.models import RoutineInstance, SelectionEntry, SelectionProcess, User
from ..schemas.routines import decode_turns, encode
from .users import user_label


def get_active_selection_process(db: Session, stable_id: str) -> Optional[SelectionProcess]:
    return (
        db.query(SelectionProcess)
        .filter(SelectionProcess.stable_id == stable_id, SelectionProcess.status == "active")
        .order_by(SelectionProcess.created_at.desc())
        .first()
    )


def current_turn_user_id(process: SelectionProcess) -> Optional[str]:
    turns = decode_turns(process.turns, process.id)
    index = process.current_turn_index or 0
    if 0 <= index < len(turns):
        return turns[index].user_id
    return None


def record_selection_entry(
    db: Session,
    process: SelectionProcess,
    instance: RoutineInstance,
    user: User,
) -> SelectionEntry:
    """
    Record that the current turn-holder picked a routine instance.

    Appends a selection entry and bumps the turn's selections_count. Turn
    advancement itself is driven by the selection process owner.
    """
    turns = decode_turns(process.turns, process.id)
    index = process.current_turn_index or 0
    turn_order = index + 1
    if 0 <= index < len(turns):
        turn_order = turns[index].order
        turns[index].selections_count += 1
        process.turns = [encode(t) for t in turns]
    now = datetime.now(timezone.utc)
    process.updated_at = now

    entry = SelectionEntry(
        selection_process_id=process.id,
        routine_instance_id=instance.id,
        selected_by=user.id,
        selected_by_name=user_label(user),
        turn_order=turn_order,
        routine_template_name=instance.template_name,
        scheduled_date=instance.scheduled_date,
        selected_at=now,
    )
    db.add(entry)
    db.flush()
    return entry
