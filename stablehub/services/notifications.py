"""
Notification sink for routine events.
Respects user preferences and quiet hours. Rows are
created with status pending for a sender to pick up.
"""
from datetime import datetime, time
from typing import Optional, Dict, List

import pytz
import structlog
from sqlalchemy.orm import Session

from ..models.models import Notification, OrganizationMember, Organization, UserNotificationPreference
from ..config import settings


log = structlog.get_logger(__name__)


def is_quiet_hours(user_pref: Optional[Dict], timezone_str: Optional[str] = None, now: Optional[datetime] = None) -> bool:
    """
    Check if the current time is within the user's quiet hours.

    Args:
        user_pref: {"quiet_hours": {start, end, timezone}}
        timezone_str: Fallback timezone (defaults to TZ_DEFAULT)
        now: Override for the current instant (aware datetime)

    Returns:
        True if within quiet hours
    """
    if not user_pref or not user_pref.get("quiet_hours"):
        return False

    quiet_hours = user_pref.get("quiet_hours") or {}
    if not quiet_hours.get("start") or not quiet_hours.get("end"):
        return False

    try:
        tz = pytz.timezone(quiet_hours.get("timezone") or timezone_str or settings.tz_default)
        start_time = time.fromisoformat(quiet_hours["start"])
        end_time = time.fromisoformat(quiet_hours["end"])
    except (pytz.UnknownTimeZoneError, ValueError):
        return False

    current = (now.astimezone(tz) if now else datetime.now(tz)).time()

    # Quiet hours may span midnight
    if start_time <= end_time:
        return start_time <= current <= end_time
    return current >= start_time or current <= end_time


def should_send_notification(db: Session, user_id: str, channel: str, timezone_str: Optional[str] = None) -> bool:
    if channel == "push" and not settings.enable_push:
        return False
    if channel == "email" and not settings.enable_email:
        return False

    user_pref = db.query(UserNotificationPreference).filter(UserNotificationPreference.user_id == user_id).first()
    if user_pref:
        if channel == "push" and not user_pref.push:
            return False
        if channel == "email" and not user_pref.email:
            return False
        if is_quiet_hours({"quiet_hours": user_pref.quiet_hours}, timezone_str):
            return False
    return True


def create_notification(
    db: Session,
    user_id: str,
    channel: str,
    template_key: Optional[str] = None,
    payload_json: Optional[Dict] = None,
    timezone_str: Optional[str] = None,
) -> Optional[Notification]:
    """
    Create a notification record if the user's preferences allow it.

    Returns:
        Notification object if created, None if skipped
    """
    if not should_send_notification(db, user_id, channel, timezone_str):
        return None

    notification = Notification(
        user_id=user_id,
        channel=channel,
        template_key=template_key,
        payload_json=payload_json,
        status="pending",
    )
    db.add(notification)
    db.flush()
    return notification


def notify_safely(db: Session, user_ids: List[str], template_key: str, payload: Dict) -> int:
    """
    Fire-and-forget notification to several users on push and email.

    Failures are logged and rolled back; they never reach the caller.

    Returns:
        Number of notification rows created
    """
    created = 0
    try:
        for user_id in dict.fromkeys(u for u in user_ids if u):
            for channel in ("push", "email"):
                if create_notification(db, user_id, channel, template_key, payload):
                    created += 1
        db.commit()
    except Exception:
        db.rollback()
        log.exception("notification_failed", template_key=template_key, user_ids=list(user_ids))
        return 0
    return created


def organization_admin_ids(db: Session, organization_id: str) -> List[str]:
    ids: List[str] = []
    org = db.query(Organization).filter(Organization.id == organization_id).first()
    if org:
        ids.append(org.owner_id)
    members = (
        db.query(OrganizationMember)
        .filter(OrganizationMember.organization_id == organization_id, OrganizationMember.status == "active")
        .all()
    )
    for member in members:
        if "administrator" in (member.roles or []):
            ids.append(member.user_id)
    return list(dict.fromkeys(ids))


def send_routine_notification(
    db: Session,
    user_ids: List[str],
    notification_type: str,  # "assigned"|"cancelled"|"medication_skipped"
    routine_data: Dict,
) -> int:
    template_key = f"routine_{notification_type}"
    payload = {
        "type": notification_type,
        "routine": routine_data,
    }
    return notify_safely(db, user_ids, template_key, payload)
