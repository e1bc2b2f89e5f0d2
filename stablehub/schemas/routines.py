from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..errors import DocumentDecodeError


# Enums
class HorseContext(str, Enum):
    none = "none"
    all = "all"
    specific = "specific"
    groups = "groups"


class StepCategory(str, Enum):
    preparation = "preparation"
    feeding = "feeding"
    medication = "medication"
    blanket = "blanket"
    turnout = "turnout"
    bring_in = "bring_in"
    mucking = "mucking"
    water = "water"
    health_check = "health_check"
    safety = "safety"
    cleaning = "cleaning"
    other = "other"


class RoutineType(str, Enum):
    morning = "morning"
    midday = "midday"
    evening = "evening"
    night = "night"
    custom = "custom"


class InstanceStatus(str, Enum):
    scheduled = "scheduled"
    started = "started"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


class StepStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    skipped = "skipped"


class RepeatPattern(str, Enum):
    daily = "daily"
    weekdays = "weekdays"
    weekly = "weekly"
    custom = "custom"


class AssignmentMode(str, Enum):
    auto = "auto"
    manual = "manual"
    unassigned = "unassigned"


class BlanketAction(str, Enum):
    on = "on"
    off = "off"
    unchanged = "unchanged"


# Stored documents (decoded once when read from a JSON column)
class HorseFilter(BaseModel):
    horse_ids: List[str] = Field(default_factory=list)
    group_ids: List[str] = Field(default_factory=list)
    exclude_horse_ids: List[str] = Field(default_factory=list)


class RoutineStep(BaseModel):
    id: str
    order: int
    name: str
    description: Optional[str] = None
    category: StepCategory = StepCategory.other
    horse_context: HorseContext = HorseContext.none
    horse_filter: HorseFilter = Field(default_factory=HorseFilter)
    show_feeding: bool = False
    show_medication: bool = False
    show_blanket_status: bool = False
    show_special_instructions: bool = False
    requires_confirmation: bool = False
    allow_photo_evidence: bool = False
    estimated_minutes: Optional[int] = None


class HorseStepProgress(BaseModel):
    horse_id: str
    horse_name: Optional[str] = None
    completed: bool = False
    skipped: bool = False
    skip_reason: Optional[str] = None
    notes: Optional[str] = None
    photo_urls: List[str] = Field(default_factory=list)
    feeding_confirmed: Optional[bool] = None
    medication_given: Optional[bool] = None
    medication_skipped: Optional[bool] = None
    blanket_action: Optional[BlanketAction] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None


class StepProgress(BaseModel):
    step_id: str
    status: StepStatus = StepStatus.pending
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    general_notes: Optional[str] = None
    photo_urls: List[str] = Field(default_factory=list)
    horse_progress: Dict[str, HorseStepProgress] = Field(default_factory=dict)
    horses_completed: int = 0
    horses_total: int = 0


class RoutineProgress(BaseModel):
    steps_completed: int = 0
    steps_total: int = 0
    percent_complete: int = 0
    step_progress: Dict[str, StepProgress] = Field(default_factory=dict)


class TemplateSnapshot(BaseModel):
    """Read-side projection of a template as seen by an instance.

    Built from the live template whenever an instance is served. Fields copied
    onto the instance row itself (template_name, points_value, ...) are frozen
    at creation time and go stale if the template is edited later.
    """
    id: str
    name: str
    type: RoutineType = RoutineType.custom
    requires_notes_read: bool = True
    allow_skip_steps: bool = True
    points_value: int = 1
    steps: List[RoutineStep] = Field(default_factory=list)


class SelectionTurn(BaseModel):
    user_id: str
    user_name: Optional[str] = None
    order: int
    status: str = "pending"  # pending|active|completed
    selections_count: int = 0


def decode_steps(raw, template_id: Optional[str] = None) -> List[RoutineStep]:
    try:
        steps = [RoutineStep.model_validate(s) for s in (raw or [])]
    except ValidationError as exc:
        raise DocumentDecodeError("routine_template.steps", template_id) from exc
    return sorted(steps, key=lambda s: s.order)


def decode_progress(raw, instance_id: Optional[str] = None) -> RoutineProgress:
    try:
        return RoutineProgress.model_validate(raw or {})
    except ValidationError as exc:
        raise DocumentDecodeError("routine_instance.progress", instance_id) from exc


def decode_turns(raw, process_id: Optional[str] = None) -> List[SelectionTurn]:
    try:
        return [SelectionTurn.model_validate(t) for t in (raw or [])]
    except ValidationError as exc:
        raise DocumentDecodeError("selection_process.turns", process_id) from exc


def encode(model: BaseModel) -> dict:
    return model.model_dump(mode="json")


# Request bodies: templates
class RoutineStepIn(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    category: StepCategory = StepCategory.other
    horse_context: HorseContext = HorseContext.none
    horse_filter: Optional[HorseFilter] = None
    show_feeding: bool = False
    show_medication: bool = False
    show_blanket_status: bool = False
    show_special_instructions: bool = False
    requires_confirmation: bool = False
    allow_photo_evidence: bool = False
    estimated_minutes: Optional[int] = Field(default=None, ge=0)


class RoutineTemplateCreate(BaseModel):
    organization_id: str
    stable_id: Optional[str] = None
    name: str = Field(min_length=1)
    description: Optional[str] = None
    type: RoutineType = RoutineType.custom
    icon: Optional[str] = None
    color: Optional[str] = None
    default_start_time: str = Field(default="07:00", pattern=r"^\d{2}:\d{2}$")
    estimated_duration: int = Field(default=30, ge=0)
    steps: List[RoutineStepIn] = Field(min_length=1)
    requires_notes_read: bool = True
    allow_skip_steps: bool = True
    points_value: int = Field(default=1, ge=0)


class RoutineTemplateUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    type: Optional[RoutineType] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    default_start_time: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    estimated_duration: Optional[int] = Field(default=None, ge=0)
    steps: Optional[List[RoutineStepIn]] = Field(default=None, min_length=1)
    requires_notes_read: Optional[bool] = None
    allow_skip_steps: Optional[bool] = None
    points_value: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None


# Request bodies: schedules
def _check_repeat_days(v: Optional[List[int]]) -> Optional[List[int]]:
    if v is None:
        return v
    for day in v:
        if day < 0 or day > 6:
            raise ValueError("repeat_days values must be between 0 (Sunday) and 6 (Saturday)")
    return sorted(set(v))


class RoutineScheduleCreate(BaseModel):
    organization_id: str
    stable_id: str
    template_id: str
    name: Optional[str] = None
    start_date: date
    end_date: date
    repeat_pattern: RepeatPattern = RepeatPattern.daily
    repeat_days: List[int] = Field(default_factory=list)
    include_holidays: bool = False
    scheduled_start_time: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    assignment_mode: AssignmentMode = AssignmentMode.unassigned
    default_assigned_to: Optional[str] = None
    custom_assignments: Optional[Dict[str, str]] = None

    @field_validator("repeat_days")
    @classmethod
    def _repeat_days(cls, v):
        return _check_repeat_days(v)


class RoutineScheduleUpdate(BaseModel):
    name: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    repeat_pattern: Optional[RepeatPattern] = None
    repeat_days: Optional[List[int]] = None
    include_holidays: Optional[bool] = None
    scheduled_start_time: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    assignment_mode: Optional[AssignmentMode] = None
    default_assigned_to: Optional[str] = None
    custom_assignments: Optional[Dict[str, str]] = None

    @field_validator("repeat_days")
    @classmethod
    def _repeat_days(cls, v):
        return _check_repeat_days(v)


class ScheduleToggle(BaseModel):
    is_enabled: bool


# Request bodies: instances
class RoutineInstanceCreate(BaseModel):
    template_id: str
    stable_id: str
    scheduled_date: date
    scheduled_start_time: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    assigned_to: Optional[str] = None


class RoutineInstanceBulkCreate(BaseModel):
    template_id: str
    stable_id: str
    start_date: date
    end_date: date
    repeat_days: List[int] = Field(default_factory=list)
    scheduled_start_time: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    assignment_mode: AssignmentMode = AssignmentMode.unassigned

    @field_validator("repeat_days")
    @classmethod
    def _repeat_days(cls, v):
        return _check_repeat_days(v)


class StartInstance(BaseModel):
    daily_notes_acknowledged: bool = False


class HorseProgressUpdate(BaseModel):
    completed: Optional[bool] = None
    skipped: Optional[bool] = None
    skip_reason: Optional[str] = None
    notes: Optional[str] = None
    photo_urls: Optional[List[str]] = None
    feeding_confirmed: Optional[bool] = None
    medication_given: Optional[bool] = None
    medication_skipped: Optional[bool] = None
    blanket_action: Optional[BlanketAction] = None


class StepProgressUpdate(BaseModel):
    step_id: str
    status: Optional[StepStatus] = None
    general_notes: Optional[str] = None
    photo_urls: Optional[List[str]] = None
    horse_updates: Dict[str, HorseProgressUpdate] = Field(default_factory=dict)
    daily_notes_acknowledged: Optional[bool] = None
    expected_version: Optional[int] = None


class CompleteInstance(BaseModel):
    notes: Optional[str] = None
    expected_version: Optional[int] = None


class CancelInstance(BaseModel):
    cancellation_reason: Optional[str] = None


class AssignInstance(BaseModel):
    assigned_to: str = Field(min_length=1)
    assigned_to_name: Optional[str] = None
    expected_version: Optional[int] = None
