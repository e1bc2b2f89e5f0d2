"""
Resolve which horses a routine step applies to.

Resolution reads the live roster every time it is called; the result at
step-completion time is what gets written to activity history.
"""
from typing import Callable, Dict, List, NamedTuple, Set

from sqlalchemy.orm import Session

from ..models.models import Horse, HorseGroup
from ..schemas.routines import HorseContext, RoutineStep


class ResolvedHorse(NamedTuple):
    horse_id: str
    name: str


def active_roster(db: Session, stable_id: str) -> List[ResolvedHorse]:
    rows = (
        db.query(Horse.id, Horse.name)
        .filter(Horse.current_stable_id == stable_id, Horse.status == "active")
        .order_by(Horse.name.asc(), Horse.id.asc())
        .all()
    )
    return [ResolvedHorse(horse_id=r[0], name=r[1]) for r in rows]


def _group_horse_ids(db: Session, group_ids: List[str]) -> Set[str]:
    horse_ids: Set[str] = set()
    for group in db.query(HorseGroup).filter(HorseGroup.id.in_(group_ids)).all():
        horse_ids.update(group.horse_ids or [])
    return horse_ids


def _resolve_none(db: Session, step: RoutineStep, stable_id: str) -> List[ResolvedHorse]:
    return []


def _resolve_all(db: Session, step: RoutineStep, stable_id: str) -> List[ResolvedHorse]:
    excluded = set(step.horse_filter.exclude_horse_ids)
    return [h for h in active_roster(db, stable_id) if h.horse_id not in excluded]


def _resolve_specific(db: Session, step: RoutineStep, stable_id: str) -> List[ResolvedHorse]:
    wanted = set(step.horse_filter.horse_ids)
    if not wanted:
        return []
    return [h for h in active_roster(db, stable_id) if h.horse_id in wanted]


def _resolve_groups(db: Session, step: RoutineStep, stable_id: str) -> List[ResolvedHorse]:
    if not step.horse_filter.group_ids:
        return []
    in_groups = _group_horse_ids(db, step.horse_filter.group_ids)
    excluded = set(step.horse_filter.exclude_horse_ids)
    return [
        h for h in active_roster(db, stable_id)
        if h.horse_id in in_groups and h.horse_id not in excluded
    ]


_RESOLVERS: Dict[HorseContext, Callable[[Session, RoutineStep, str], List[ResolvedHorse]]] = {
    HorseContext.none: _resolve_none,
    HorseContext.all: _resolve_all,
    HorseContext.specific: _resolve_specific,
    HorseContext.groups: _resolve_groups,
}


def resolve_step_horses(db: Session, step: RoutineStep, stable_id: str) -> List[ResolvedHorse]:
    """
    Compute the concrete horse set for a step.

    Args:
        db: Database session
        step: Decoded routine step
        stable_id: Stable whose active roster is considered

    Returns:
        Horses ordered by name; empty for steps without horse context
    """
    return _RESOLVERS[step.horse_context](db, step, stable_id)
