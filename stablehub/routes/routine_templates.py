import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..auth.security import get_access
from ..db import get_db
from ..errors import Forbidden, NotFound, ValidationFailed
from ..models.models import Organization, RoutineTemplate, Stable
from ..schemas.routines import (
    HorseFilter,
    RoutineStep,
    RoutineStepIn,
    RoutineTemplateCreate,
    RoutineTemplateUpdate,
    decode_steps,
    encode,
)
from ..services.access import AccessResolver
from ..services.audit import compute_diff, create_audit_log


router = APIRouter(prefix="/routines/templates", tags=["routine-templates"])


def _build_steps(steps: List[RoutineStepIn]) -> List[dict]:
    """Fresh step ids on every write; order follows list position."""
    built = []
    for index, step in enumerate(steps):
        data = step.model_dump()
        data["horse_filter"] = step.horse_filter or HorseFilter()
        built.append(encode(RoutineStep(id=str(uuid.uuid4()), order=index + 1, **data)))
    return built


def _serialize_template(t: RoutineTemplate) -> Dict[str, Any]:
    return {
        "id": t.id,
        "organization_id": t.organization_id,
        "stable_id": t.stable_id,
        "name": t.name,
        "description": t.description,
        "type": t.type,
        "icon": t.icon,
        "color": t.color,
        "default_start_time": t.default_start_time,
        "estimated_duration": t.estimated_duration,
        "steps": [encode(s) for s in decode_steps(t.steps, t.id)],
        "requires_notes_read": t.requires_notes_read,
        "allow_skip_steps": t.allow_skip_steps,
        "points_value": t.points_value,
        "is_active": t.is_active,
        "created_at": t.created_at.isoformat() if t.created_at else None,
        "created_by": t.created_by,
        "updated_at": t.updated_at.isoformat() if t.updated_at else None,
        "updated_by": t.updated_by,
    }


def _can_manage(access: AccessResolver, organization_id: str, stable_id: Optional[str]) -> bool:
    if stable_id:
        return access.can_manage_stable(stable_id)
    return access.is_organization_admin(organization_id)


def _get_template(db: Session, template_id: str) -> RoutineTemplate:
    template = db.query(RoutineTemplate).filter(RoutineTemplate.id == template_id).first()
    if not template:
        raise NotFound("Routine template", template_id)
    return template


def _audit(db: Session, template: RoutineTemplate, action: str, access: AccessResolver, changes=None) -> None:
    create_audit_log(
        db,
        entity_type="routine_template",
        entity_id=template.id,
        action=action,
        actor_id=access.user_id,
        actor_role=access.user.system_role,
        source="api",
        changes_json=changes,
        context={"organization_id": template.organization_id, "stable_id": template.stable_id},
    )


@router.post("", status_code=201)
def create_template(
    payload: RoutineTemplateCreate,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    org = db.query(Organization).filter(Organization.id == payload.organization_id).first()
    if not org:
        raise NotFound("Organization", payload.organization_id)
    if payload.stable_id:
        stable = db.query(Stable).filter(Stable.id == payload.stable_id).first()
        if not stable:
            raise NotFound("Stable", payload.stable_id)
        if stable.organization_id != org.id:
            raise ValidationFailed("Stable belongs to another organization")
    if not _can_manage(access, org.id, payload.stable_id):
        raise Forbidden("You do not have permission to manage routine templates here")

    now = datetime.now(timezone.utc)
    template = RoutineTemplate(
        organization_id=org.id,
        stable_id=payload.stable_id,
        name=payload.name,
        description=payload.description,
        type=payload.type.value,
        icon=payload.icon,
        color=payload.color,
        default_start_time=payload.default_start_time,
        estimated_duration=payload.estimated_duration,
        steps=_build_steps(payload.steps),
        requires_notes_read=payload.requires_notes_read,
        allow_skip_steps=payload.allow_skip_steps,
        points_value=payload.points_value,
        is_active=True,
        created_at=now,
        created_by=access.user_id,
        updated_at=now,
        updated_by=access.user_id,
    )
    db.add(template)
    db.flush()
    _audit(db, template, "CREATE", access)
    db.commit()
    db.refresh(template)
    return _serialize_template(template)


@router.get("")
def list_templates(
    organization_id: str,
    stable_id: Optional[str] = None,
    active_only: bool = True,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    if not access.has_organization_access(organization_id):
        raise Forbidden("You do not have access to this organization")
    query = db.query(RoutineTemplate).filter(RoutineTemplate.organization_id == organization_id)
    if stable_id:
        query = query.filter(or_(RoutineTemplate.stable_id == stable_id, RoutineTemplate.stable_id.is_(None)))
    if active_only:
        query = query.filter(RoutineTemplate.is_active.is_(True))
    templates = query.order_by(RoutineTemplate.name.asc()).all()
    return {"templates": [_serialize_template(t) for t in templates]}


@router.get("/{template_id}")
def get_template(
    template_id: str,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    template = _get_template(db, template_id)
    if not access.has_organization_access(template.organization_id):
        raise Forbidden("You do not have access to this routine template")
    return _serialize_template(template)


@router.put("/{template_id}")
def update_template(
    template_id: str,
    payload: RoutineTemplateUpdate,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    """Update a template. Replacing steps regenerates every step id."""
    template = _get_template(db, template_id)
    if not _can_manage(access, template.organization_id, template.stable_id):
        raise Forbidden("You do not have permission to manage this routine template")

    before = _serialize_template(template)
    data = payload.model_dump(exclude_unset=True)
    steps = data.pop("steps", None)
    for key, value in data.items():
        if value is None:
            continue
        setattr(template, key, value.value if hasattr(value, "value") else value)
    if steps is not None:
        template.steps = _build_steps(payload.steps)
    template.updated_at = datetime.now(timezone.utc)
    template.updated_by = access.user_id

    after = _serialize_template(template)
    before.pop("updated_at", None)
    after.pop("updated_at", None)
    _audit(db, template, "UPDATE", access, changes=compute_diff(before, after))
    db.commit()
    db.refresh(template)
    return _serialize_template(template)


@router.delete("/{template_id}")
def delete_template(
    template_id: str,
    db: Session = Depends(get_db),
    access: AccessResolver = Depends(get_access),
):
    """Soft delete; existing instances keep their denormalized copy."""
    template = _get_template(db, template_id)
    if not _can_manage(access, template.organization_id, template.stable_id):
        raise Forbidden("You do not have permission to manage this routine template")
    template.is_active = False
    template.updated_at = datetime.now(timezone.utc)
    template.updated_by = access.user_id
    _audit(db, template, "DELETE", access)
    db.commit()
    return {"status": "ok"}
