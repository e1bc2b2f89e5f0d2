"""
Access resolution.

Computes a user's effective relationship to an organization, stable or horse
from ownership, placement and membership records. One resolver is built per
request; lookups are cached on the instance and never persisted.
"""
from datetime import date
from enum import Enum
from functools import wraps
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.models import Horse, Organization, OrganizationMember, Stable, User


log = structlog.get_logger(__name__)

SYSTEM_ADMIN = "system_admin"

MANAGEMENT_ROLES = {"administrator"}
SCHEDULE_ROLES = {"administrator", "schedule_planner"}
PROFESSIONAL_ROLES = {"veterinarian", "dentist", "farrier"}
BASIC_CARE_ROLES = {"groom", "rider", "customer"}


class AccessLevel(str, Enum):
    public = "public"
    basic_care = "basic_care"
    professional = "professional"
    management = "management"
    owner = "owner"


class AccessSource(str, Enum):
    ownership = "ownership"
    placement = "placement"
    stable = "stable"


class AccessContext(BaseModel):
    horse_id: str
    user_id: str
    access_level: AccessLevel
    access_source: AccessSource
    is_owner: bool = False
    organization_roles: List[str] = Field(default_factory=list)
    stable_access: str = "all"
    placement_date: Optional[date] = None
    history_cutoff: Optional[date] = None


def level_for_roles(roles: List[str], owner: bool = False, system_admin: bool = False) -> AccessLevel:
    """Map organization roles to an access level; first match wins."""
    if system_admin or owner:
        return AccessLevel.management
    role_set = set(roles or [])
    if role_set & MANAGEMENT_ROLES:
        return AccessLevel.management
    if role_set & PROFESSIONAL_ROLES:
        return AccessLevel.professional
    if role_set & BASIC_CARE_ROLES:
        return AccessLevel.basic_care
    return AccessLevel.public


def _fail_closed(default: Any):
    """Store errors during a check are treated as 'no access'."""
    def _decorator(fn):
        @wraps(fn)
        def _wrapper(self, *args, **kwargs):
            try:
                return fn(self, *args, **kwargs)
            except SQLAlchemyError as exc:
                log.warning(
                    "access_check_failed",
                    check=fn.__name__,
                    user_id=self.user_id,
                    args=[str(a) for a in args],
                    error=str(exc),
                )
                return default
        return _wrapper
    return _decorator


class AccessResolver:
    def __init__(self, db: Session, user: User):
        self.db = db
        self.user = user
        self.user_id = str(user.id)
        self._cache: Dict[tuple, Any] = {}

    @property
    def is_system_admin(self) -> bool:
        return (self.user.system_role or "") == SYSTEM_ADMIN

    # Cached lookups
    def _get(self, key: tuple, loader):
        if key not in self._cache:
            self._cache[key] = loader()
        return self._cache[key]

    def _organization(self, organization_id: Optional[str]) -> Optional[Organization]:
        if not organization_id:
            return None
        return self._get(
            ("org", organization_id),
            lambda: self.db.query(Organization).filter(Organization.id == organization_id).first(),
        )

    def _stable(self, stable_id: Optional[str]) -> Optional[Stable]:
        if not stable_id:
            return None
        return self._get(
            ("stable", stable_id),
            lambda: self.db.query(Stable).filter(Stable.id == stable_id).first(),
        )

    def _horse(self, horse_id: str) -> Optional[Horse]:
        return self._get(
            ("horse", horse_id),
            lambda: self.db.query(Horse).filter(Horse.id == horse_id).first(),
        )

    def _active_membership(self, organization_id: Optional[str]) -> Optional[OrganizationMember]:
        if not organization_id:
            return None

        def _load():
            return (
                self.db.query(OrganizationMember)
                .filter(
                    OrganizationMember.user_id == self.user_id,
                    OrganizationMember.organization_id == organization_id,
                    OrganizationMember.status == "active",
                )
                .first()
            )

        return self._get(("member", organization_id), _load)

    @staticmethod
    def _covers_stable(member: OrganizationMember, stable_id: str) -> bool:
        if member.stable_access == "all":
            return True
        return member.stable_access == "specific" and stable_id in (member.assigned_stable_ids or [])

    def _is_org_owner(self, organization_id: Optional[str]) -> bool:
        org = self._organization(organization_id)
        return bool(org and org.owner_id == self.user_id)

    # Organization predicates
    @_fail_closed(False)
    def has_organization_access(self, organization_id: str) -> bool:
        if self.is_system_admin:
            return True
        if self._is_org_owner(organization_id):
            return True
        return self._active_membership(organization_id) is not None

    @_fail_closed(False)
    def is_organization_admin(self, organization_id: str) -> bool:
        if self.is_system_admin or self._is_org_owner(organization_id):
            return True
        member = self._active_membership(organization_id)
        return bool(member and set(member.roles or []) & MANAGEMENT_ROLES)

    # Stable predicates
    def _stable_member(self, stable: Stable) -> Optional[OrganizationMember]:
        member = self._active_membership(stable.organization_id)
        if member and self._covers_stable(member, stable.id):
            return member
        return None

    def _stable_role_check(self, stable_id: str, roles: Optional[set]) -> bool:
        if self.is_system_admin:
            return True
        stable = self._stable(stable_id)
        if stable is None:
            return False
        if stable.owner_id == self.user_id or self._is_org_owner(stable.organization_id):
            return True
        member = self._stable_member(stable)
        if member is None:
            return False
        if roles is None:
            return True
        return bool(set(member.roles or []) & roles)

    @_fail_closed(False)
    def can_access_stable(self, stable_id: str) -> bool:
        return self._stable_role_check(stable_id, None)

    @_fail_closed(False)
    def can_manage_stable(self, stable_id: str) -> bool:
        return self._stable_role_check(stable_id, MANAGEMENT_ROLES)

    @_fail_closed(False)
    def can_manage_schedules(self, stable_id: str) -> bool:
        return self._stable_role_check(stable_id, SCHEDULE_ROLES)

    # Horse resolution
    @_fail_closed(None)
    def resolve(self, horse_id: str) -> Optional[AccessContext]:
        """
        Resolve the caller's access to a horse.

        Priority, first match wins: direct ownership, membership in the owning
        organization, membership in the placement organization, membership in
        the organization running the horse's current stable.

        Args:
            horse_id: Horse ID

        Returns:
            AccessContext, or None when the caller has no access
        """
        horse = self._horse(horse_id)
        if horse is None:
            return None

        if self.is_system_admin:
            return AccessContext(
                horse_id=horse.id,
                user_id=self.user_id,
                access_level=AccessLevel.management,
                access_source=AccessSource.ownership,
                organization_roles=[],
            )

        if horse.owner_id and horse.owner_id == self.user_id:
            return AccessContext(
                horse_id=horse.id,
                user_id=self.user_id,
                access_level=AccessLevel.owner,
                access_source=AccessSource.ownership,
                is_owner=True,
            )

        owner_org = horse.owner_organization_id
        member = self._active_membership(owner_org)
        org_owner = self._is_org_owner(owner_org)
        if member is not None or org_owner:
            roles = list(member.roles or []) if member else []
            return AccessContext(
                horse_id=horse.id,
                user_id=self.user_id,
                access_level=level_for_roles(roles, owner=org_owner),
                access_source=AccessSource.ownership,
                is_owner=True,
                organization_roles=roles,
                stable_access=member.stable_access if member else "all",
            )

        placement_org = horse.placement_organization_id
        member = self._active_membership(placement_org)
        org_owner = self._is_org_owner(placement_org)
        if member is not None or org_owner:
            roles = list(member.roles or []) if member else []
            cutoff = None if horse.history_visibility == "full" else horse.placement_date
            return AccessContext(
                horse_id=horse.id,
                user_id=self.user_id,
                access_level=level_for_roles(roles, owner=org_owner),
                access_source=AccessSource.placement,
                organization_roles=roles,
                stable_access=member.stable_access if member else "all",
                placement_date=horse.placement_date,
                history_cutoff=cutoff,
            )

        stable = self._stable(horse.current_stable_id)
        if stable is None:
            return None
        stable_owner = stable.owner_id == self.user_id or self._is_org_owner(stable.organization_id)
        member = self._stable_member(stable)
        if member is None and not stable_owner:
            return None
        roles = list(member.roles or []) if member else []
        if horse.history_visibility == "full":
            cutoff = None
        else:
            cutoff = horse.placement_date or (horse.assigned_at.date() if horse.assigned_at else None)
        return AccessContext(
            horse_id=horse.id,
            user_id=self.user_id,
            access_level=level_for_roles(roles, owner=stable_owner),
            access_source=AccessSource.stable,
            organization_roles=roles,
            stable_access=member.stable_access if member else "all",
            placement_date=horse.placement_date,
            history_cutoff=cutoff,
        )
