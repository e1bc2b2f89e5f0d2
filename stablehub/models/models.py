import uuid
from datetime import datetime, date, timezone
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Integer,
    Float,
    JSON,
    UniqueConstraint,
    Text,
    Index,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def uuid_pk() -> Mapped[str]:
    return mapped_column(String(36), primary_key=True, default=new_id)


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = uuid_pk()
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(255))
    system_role: Mapped[str] = mapped_column(String(30), default="user")  # user|system_admin
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class OrganizationMember(Base):
    """Membership of a user in an organization, keyed by (user_id, organization_id)"""
    __tablename__ = "organization_members"

    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|active|expired
    roles: Mapped[list] = mapped_column(JSON, default=list)  # administrator|schedule_planner|veterinarian|groom|...
    stable_access: Mapped[str] = mapped_column(String(20), default="all")  # all|specific
    assigned_stable_ids: Mapped[list] = mapped_column(JSON, default=list)
    show_in_planning: Mapped[bool] = mapped_column(Boolean, default=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_org_members_org_status", "organization_id", "status"),
    )


class Stable(Base):
    __tablename__ = "stables"

    id: Mapped[str] = uuid_pk()
    organization_id: Mapped[str] = mapped_column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    owner_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Horse(Base):
    __tablename__ = "horses"

    id: Mapped[str] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active")  # active|inactive
    owner_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    owner_organization_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("organizations.id", ondelete="SET NULL"), index=True)
    placement_organization_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("organizations.id", ondelete="SET NULL"), index=True)
    placement_date: Mapped[Optional[date]] = mapped_column(Date)
    history_visibility: Mapped[str] = mapped_column(String(20), default="placement")  # placement|full
    current_stable_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("stables.id", ondelete="SET NULL"), index=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))  # joined current stable
    special_instructions: Mapped[Optional[str]] = mapped_column(Text)
    current_blanket: Mapped[Optional[str]] = mapped_column(String(50))
    blanket_info: Mapped[Optional[dict]] = mapped_column(JSON)  # {recommended_action, target_blanket, reason}
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_horses_stable_status", "current_stable_id", "status"),
    )


class HorseGroup(Base):
    __tablename__ = "horse_groups"

    id: Mapped[str] = uuid_pk()
    organization_id: Mapped[str] = mapped_column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    horse_ids: Mapped[list] = mapped_column(JSON, default=list)


class HorseFeeding(Base):
    """Active feeding plan for a horse at a stable"""
    __tablename__ = "horse_feedings"

    id: Mapped[str] = uuid_pk()
    horse_id: Mapped[str] = mapped_column(String(36), ForeignKey("horses.id", ondelete="CASCADE"), nullable=False, index=True)
    stable_id: Mapped[str] = mapped_column(String(36), ForeignKey("stables.id", ondelete="CASCADE"), nullable=False, index=True)
    feed_type_name: Mapped[str] = mapped_column(String(255), default="Unknown feed")
    quantity: Mapped[float] = mapped_column(Float, default=0)
    quantity_measure: Mapped[str] = mapped_column(String(30), default="portion")
    special_instructions: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class HorseMedication(Base):
    """Active medication record for a horse"""
    __tablename__ = "horse_medications"

    id: Mapped[str] = uuid_pk()
    horse_id: Mapped[str] = mapped_column(String(36), ForeignKey("horses.id", ondelete="CASCADE"), nullable=False, index=True)
    medication_name: Mapped[str] = mapped_column(String(255), default="Unknown medication")
    dosage: Mapped[str] = mapped_column(String(100), default="")
    administration_method: Mapped[str] = mapped_column(String(50), default="oral")
    notes: Mapped[Optional[str]] = mapped_column(Text)
    is_required: Mapped[bool] = mapped_column(Boolean, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Holiday(Base):
    """Recognized holidays; organization_id NULL means the holiday applies everywhere"""
    __tablename__ = "holidays"

    id: Mapped[str] = uuid_pk()
    organization_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), index=True)
    holiday_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class RoutineTemplate(Base):
    __tablename__ = "routine_templates"

    id: Mapped[str] = uuid_pk()
    organization_id: Mapped[str] = mapped_column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    stable_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("stables.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    type: Mapped[str] = mapped_column(String(30), default="custom")  # morning|midday|evening|night|custom
    icon: Mapped[Optional[str]] = mapped_column(String(50))
    color: Mapped[Optional[str]] = mapped_column(String(20))
    default_start_time: Mapped[str] = mapped_column(String(5), default="07:00")  # HH:MM
    estimated_duration: Mapped[int] = mapped_column(Integer, default=30)  # minutes
    steps: Mapped[list] = mapped_column(JSON, default=list)
    requires_notes_read: Mapped[bool] = mapped_column(Boolean, default=True)
    allow_skip_steps: Mapped[bool] = mapped_column(Boolean, default=True)
    points_value: Mapped[int] = mapped_column(Integer, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    created_by: Mapped[Optional[str]] = mapped_column(String(36))
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_by: Mapped[Optional[str]] = mapped_column(String(36))


class RoutineSchedule(Base):
    __tablename__ = "routine_schedules"

    id: Mapped[str] = uuid_pk()
    organization_id: Mapped[str] = mapped_column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    stable_id: Mapped[str] = mapped_column(String(36), ForeignKey("stables.id", ondelete="CASCADE"), nullable=False, index=True)
    template_id: Mapped[str] = mapped_column(String(36), ForeignKey("routine_templates.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    # Denormalized at write time, may go stale if the template/stable is renamed
    template_name: Mapped[Optional[str]] = mapped_column(String(255))
    template_color: Mapped[Optional[str]] = mapped_column(String(20))
    template_icon: Mapped[Optional[str]] = mapped_column(String(50))
    stable_name: Mapped[Optional[str]] = mapped_column(String(255))
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    repeat_pattern: Mapped[str] = mapped_column(String(20), default="daily")  # daily|weekdays|weekly|custom
    repeat_days: Mapped[list] = mapped_column(JSON, default=list)  # 0=Sunday .. 6=Saturday
    include_holidays: Mapped[bool] = mapped_column(Boolean, default=False)
    scheduled_start_time: Mapped[str] = mapped_column(String(5), default="07:00")
    assignment_mode: Mapped[str] = mapped_column(String(20), default="unassigned")  # auto|manual|unassigned
    default_assigned_to: Mapped[Optional[str]] = mapped_column(String(36))
    default_assigned_to_name: Mapped[Optional[str]] = mapped_column(String(255))
    custom_assignments: Mapped[Optional[dict]] = mapped_column(JSON)  # {"YYYY-MM-DD"|"0".."6": user_id}
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    instances_generated: Mapped[int] = mapped_column(Integer, default=0)
    last_generated_date: Mapped[Optional[date]] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    created_by: Mapped[Optional[str]] = mapped_column(String(36))
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_by: Mapped[Optional[str]] = mapped_column(String(36))


class RoutineInstance(Base):
    """One dated occurrence of a routine template"""
    __tablename__ = "routine_instances"

    id: Mapped[str] = uuid_pk()
    template_id: Mapped[str] = mapped_column(String(36), ForeignKey("routine_templates.id", ondelete="CASCADE"), nullable=False, index=True)
    organization_id: Mapped[str] = mapped_column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    stable_id: Mapped[str] = mapped_column(String(36), ForeignKey("stables.id", ondelete="CASCADE"), nullable=False, index=True)
    template_name: Mapped[Optional[str]] = mapped_column(String(255))
    stable_name: Mapped[Optional[str]] = mapped_column(String(255))
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    scheduled_start_time: Mapped[str] = mapped_column(String(5), default="07:00")
    estimated_duration: Mapped[int] = mapped_column(Integer, default=30)
    status: Mapped[str] = mapped_column(String(20), default="scheduled", index=True)  # scheduled|started|in_progress|completed|cancelled
    assigned_to: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    assigned_to_name: Mapped[Optional[str]] = mapped_column(String(255))
    assignment_type: Mapped[str] = mapped_column(String(20), default="unassigned")  # auto|manual|self|unassigned
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    assigned_by: Mapped[Optional[str]] = mapped_column(String(36))
    current_step_id: Mapped[Optional[str]] = mapped_column(String(36))
    current_step_order: Mapped[Optional[int]] = mapped_column(Integer)
    progress: Mapped[dict] = mapped_column(JSON, default=dict)
    points_value: Mapped[int] = mapped_column(Integer, default=1)
    points_awarded: Mapped[Optional[int]] = mapped_column(Integer)
    is_holiday_shift: Mapped[bool] = mapped_column(Boolean, default=False)
    daily_notes_acknowledged: Mapped[bool] = mapped_column(Boolean, default=False)
    daily_notes_acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    started_by: Mapped[Optional[str]] = mapped_column(String(36))
    started_by_name: Mapped[Optional[str]] = mapped_column(String(255))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_by: Mapped[Optional[str]] = mapped_column(String(36))
    completed_by_name: Mapped[Optional[str]] = mapped_column(String(255))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(36))
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    created_by: Mapped[Optional[str]] = mapped_column(String(36))  # user id or "system"
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_by: Mapped[Optional[str]] = mapped_column(String(36))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_instances_stable_date", "stable_id", "scheduled_date"),
    )


class ActivityHistoryEntry(Base):
    """Per-horse execution record of one routine step; one row per (instance, step, horse)"""
    __tablename__ = "activity_history_entries"

    id: Mapped[str] = uuid_pk()
    horse_id: Mapped[str] = mapped_column(String(36), ForeignKey("horses.id", ondelete="CASCADE"), nullable=False, index=True)
    routine_instance_id: Mapped[str] = mapped_column(String(36), ForeignKey("routine_instances.id", ondelete="CASCADE"), nullable=False, index=True)
    routine_step_id: Mapped[str] = mapped_column(String(36), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    stable_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    horse_name: Mapped[str] = mapped_column(String(255), nullable=False)
    stable_name: Mapped[Optional[str]] = mapped_column(String(255))
    routine_template_name: Mapped[Optional[str]] = mapped_column(String(255))
    routine_type: Mapped[Optional[str]] = mapped_column(String(30))
    step_name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(30), nullable=False)
    step_order: Mapped[int] = mapped_column(Integer, default=0)
    execution_status: Mapped[str] = mapped_column(String(20), nullable=False)  # completed|skipped
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    executed_by: Mapped[str] = mapped_column(String(36), nullable=False)
    executed_by_name: Mapped[Optional[str]] = mapped_column(String(255))
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    skip_reason: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    photo_urls: Mapped[Optional[list]] = mapped_column(JSON)
    feeding_snapshot: Mapped[Optional[dict]] = mapped_column(JSON)
    medication_snapshot: Mapped[Optional[dict]] = mapped_column(JSON)
    blanket_snapshot: Mapped[Optional[dict]] = mapped_column(JSON)
    horse_context_snapshot: Mapped[Optional[dict]] = mapped_column(JSON)
    version: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("routine_instance_id", "routine_step_id", "horse_id", name="uq_history_instance_step_horse"),
        Index("idx_history_horse_date", "horse_id", "scheduled_date"),
    )


class SelectionProcess(Base):
    """Turn-based routine picking for a stable"""
    __tablename__ = "selection_processes"

    id: Mapped[str] = uuid_pk()
    organization_id: Mapped[str] = mapped_column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    stable_id: Mapped[str] = mapped_column(String(36), ForeignKey("stables.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="draft")  # draft|active|completed|cancelled
    turns: Mapped[list] = mapped_column(JSON, default=list)  # [{user_id, user_name, order, status, selections_count}]
    current_turn_index: Mapped[int] = mapped_column(Integer, default=0)
    selection_start_date: Mapped[Optional[date]] = mapped_column(Date)
    selection_end_date: Mapped[Optional[date]] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    created_by: Mapped[Optional[str]] = mapped_column(String(36))
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class SelectionEntry(Base):
    __tablename__ = "selection_entries"

    id: Mapped[str] = uuid_pk()
    selection_process_id: Mapped[str] = mapped_column(String(36), ForeignKey("selection_processes.id", ondelete="CASCADE"), nullable=False, index=True)
    routine_instance_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    selected_by: Mapped[str] = mapped_column(String(36), nullable=False)
    selected_by_name: Mapped[Optional[str]] = mapped_column(String(255))
    turn_order: Mapped[int] = mapped_column(Integer, nullable=False)
    routine_template_name: Mapped[Optional[str]] = mapped_column(String(255))
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    selected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class AuditLog(Base):
    """Append-only audit log for routine lifecycle actions"""
    __tablename__ = "audit_logs"

    id: Mapped[str] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # routine_instance|routine_schedule|routine_template
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CREATE|START|PROGRESS|COMPLETE|CANCEL|RESTART|ASSIGN|DELETE|UPDATE
    actor_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))
    source: Mapped[Optional[str]] = mapped_column(String(50))  # api|system
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
    )


class Notification(Base):
    """Notification records for push and email"""
    __tablename__ = "notifications"

    id: Mapped[str] = uuid_pk()
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)  # push|email
    template_key: Mapped[Optional[str]] = mapped_column(String(100))
    payload_json: Mapped[Optional[dict]] = mapped_column(JSON)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|sent|failed
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_notifications_user_status", "user_id", "status"),
    )


class UserNotificationPreference(Base):
    __tablename__ = "user_notification_preferences"

    id: Mapped[str] = uuid_pk()
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False, index=True)
    push: Mapped[bool] = mapped_column(Boolean, default=True)
    email: Mapped[bool] = mapped_column(Boolean, default=True)
    quiet_hours: Mapped[Optional[dict]] = mapped_column(JSON)  # {start: "HH:MM", end: "HH:MM", timezone: "Europe/Stockholm"}
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
