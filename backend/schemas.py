from typing import Dict, List, Optional
from datetime import datetime

from pydantic import BaseModel, EmailStr, Field

from models import Period, Role, ShareStatus, Stage, Status, TimeMode


# -----------------------------
# Employee / Auth schemas
# -----------------------------
class EmployeeBase(BaseModel):
    name: str
    email: EmailStr
    role: Role = Role.EMPLOYEE
    is_active: bool = True
    manager_id: Optional[int] = None


class EmployeeCreate(EmployeeBase):
    """
    Used when HR registers a new employee.
    Includes plain password (will be hashed in backend).
    """
    password: str = Field(min_length=6)


class EmployeeOut(EmployeeBase):
    id: int

    class Config:
        from_attributes = True


class EmployeeBrief(BaseModel):
    id: int
    name: str

    class Config:
        from_attributes = True


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: EmployeeOut


# -----------------------------
# KPI template schemas
# -----------------------------
class KPIItemBase(BaseModel):
    name: str
    description: Optional[str] = None
    max_score: float = Field(gt=0)
    # Display rank only
    order: int = 0


class KPIItemCreate(KPIItemBase):
    pass


class KPIItemOut(KPIItemBase):
    id: int

    class Config:
        from_attributes = True


class TemplateCreate(BaseModel):
    name: str
    description: Optional[str] = None
    period: Period
    items: List[KPIItemCreate] = Field(min_length=1)


class TemplateBrief(BaseModel):
    id: int
    name: str

    class Config:
        from_attributes = True


class TemplateOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    period: Period
    items: List[KPIItemOut] = []

    class Config:
        from_attributes = True


# -----------------------------
# Deadline plan
# -----------------------------
class DeadlinePlanOut(BaseModel):
    period_end: datetime
    available_days: int
    time_mode: TimeMode
    is_valid: bool
    message: str = ""
    self_eval_deadline: Optional[datetime] = None
    manager_eval_deadline: Optional[datetime] = None
    hr_review_deadline: Optional[datetime] = None
    final_confirm_deadline: Optional[datetime] = None
    warnings: List[str] = []

    class Config:
        from_attributes = True


# -----------------------------
# Evaluation schemas
# -----------------------------
class EvaluationCreate(BaseModel):
    """
    Bulk creation: one evaluation per employee.
    Supplying all four deadlines switches to a custom schedule.
    """
    employee_ids: List[int] = Field(min_length=1)
    template_id: int
    period: Period
    year: int
    month: Optional[int] = None
    quarter: Optional[int] = None
    self_eval_deadline: Optional[datetime] = None
    manager_eval_deadline: Optional[datetime] = None
    hr_review_deadline: Optional[datetime] = None
    final_confirm_deadline: Optional[datetime] = None
    # Go ahead even when the period has too little time left
    force: bool = False


class ScoreOut(BaseModel):
    id: int
    item_id: int
    item: KPIItemOut
    self_score: Optional[float] = None
    self_comment: Optional[str] = None
    manager_score: Optional[float] = None
    manager_comment: Optional[str] = None
    hr_score: Optional[float] = None
    hr_comment: Optional[str] = None
    final_score: Optional[float] = None
    final_comment: Optional[str] = None

    class Config:
        from_attributes = True


class ScoreUpdate(BaseModel):
    score: Optional[float] = None
    comment: Optional[str] = None


class EvaluationOut(BaseModel):
    id: int
    employee_id: int
    employee: EmployeeBrief
    template_id: int
    template: TemplateBrief
    period: Period
    year: int
    month: Optional[int] = None
    quarter: Optional[int] = None
    status: Status
    total_score: float
    time_mode: TimeMode
    self_eval_deadline: Optional[datetime] = None
    manager_eval_deadline: Optional[datetime] = None
    hr_review_deadline: Optional[datetime] = None
    final_confirm_deadline: Optional[datetime] = None
    has_objection: bool = False
    objection_reason: Optional[str] = None
    final_comment: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    # Derived on read
    awaiting: Optional[Stage] = None
    is_overdue: bool = False
    remaining_days: int = 0

    class Config:
        from_attributes = True


class EvaluationDetail(EvaluationOut):
    scores: List[ScoreOut] = []


class EvaluationCreateResponse(BaseModel):
    evaluations: List[EvaluationOut]
    plan: DeadlinePlanOut


class EvaluationPage(BaseModel):
    items: List[EvaluationOut]
    total: int
    page: int
    page_size: int
    stats: Dict[str, float]


class ObjectionCreate(BaseModel):
    reason: str


class ObjectionHandle(BaseModel):
    total_score: float = Field(ge=0)
    final_comment: str


# -----------------------------
# Share (delegated scoring) schemas
# -----------------------------
class ShareCreate(BaseModel):
    shared_to_ids: List[int] = Field(min_length=1)
    message: Optional[str] = None
    deadline: Optional[datetime] = None


class ShareScoreUpdate(BaseModel):
    item_id: int
    score: Optional[float] = None
    comment: Optional[str] = None


class ShareScoreOut(BaseModel):
    id: int
    item_id: int
    score: Optional[float] = None
    comment: Optional[str] = None

    class Config:
        from_attributes = True


class ShareOut(BaseModel):
    id: int
    evaluation_id: int
    shared_to: EmployeeBrief
    shared_by: EmployeeBrief
    status: ShareStatus
    message: Optional[str] = None
    deadline: Optional[datetime] = None
    created_at: datetime
    scores: List[ShareScoreOut] = []

    class Config:
        from_attributes = True


class ShareSummaryEntry(BaseModel):
    shared_to: str
    score: Optional[float] = None
    comment: Optional[str] = None


class ShareSummaryItem(BaseModel):
    item_id: int
    item_name: str
    average_score: Optional[float] = None
    score_count: int
    scores: List[ShareSummaryEntry] = []


# -----------------------------
# Comment schemas
# -----------------------------
class CommentCreate(BaseModel):
    content: str
    is_private: bool = False


class CommentUpdate(BaseModel):
    content: str
    is_private: Optional[bool] = None


class CommentOut(BaseModel):
    id: int
    evaluation_id: int
    user: EmployeeBrief
    content: str
    is_private: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
