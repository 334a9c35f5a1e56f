import enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    Float,
    ForeignKey,
    Boolean,
    Enum as SQLEnum,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from db import Base, utcnow


class Role(str, enum.Enum):
    EMPLOYEE = "employee"
    MANAGER = "manager"
    HR = "hr"


class Period(str, enum.Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class Status(str, enum.Enum):
    PENDING = "pending"
    SELF_EVALUATED = "self_evaluated"
    MANAGER_EVALUATED = "manager_evaluated"
    PENDING_CONFIRM = "pending_confirm"
    COMPLETED = "completed"


class Stage(str, enum.Enum):
    SELF = "self"
    MANAGER = "manager"
    HR = "hr"
    CONFIRM = "confirm"


class TimeMode(str, enum.Enum):
    STANDARD = "standard"
    COMPRESSED = "compressed"
    EMERGENCY = "emergency"
    CUSTOM = "custom"


class ShareStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


def _enum_column(enum_cls, **kwargs):
    # Store the lowercase values, not the member names
    return Column(
        SQLEnum(
            enum_cls,
            native_enum=False,
            length=32,
            values_callable=lambda members: [m.value for m in members],
        ),
        **kwargs,
    )


class Employee(Base):
    """
    Person taking part in evaluations; also the login account.

    - role controls permissions: 'employee', 'manager', 'hr'
    - manager_id points at the direct manager (at most one)
    """

    __tablename__ = "employees"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    email = Column(String(100), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = _enum_column(Role, nullable=False, default=Role.EMPLOYEE)
    is_active = Column(Boolean, nullable=False, default=True)
    manager_id = Column(Integer, ForeignKey("employees.id"), nullable=True)

    manager = relationship("Employee", remote_side=[id], backref="reports")


class KPITemplate(Base):
    __tablename__ = "kpi_templates"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    period = _enum_column(Period, nullable=False)

    items = relationship(
        "KPIItem",
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="KPIItem.order",
    )


class KPIItem(Base):
    __tablename__ = "kpi_items"

    id = Column(Integer, primary_key=True, index=True)
    template_id = Column(Integer, ForeignKey("kpi_templates.id"), nullable=False)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    max_score = Column(Float, nullable=False)
    # Display rank only
    order = Column(Integer, nullable=False, default=0)

    template = relationship("KPITemplate", back_populates="items")


class Evaluation(Base):
    __tablename__ = "kpi_evaluations"

    id = Column(Integer, primary_key=True, index=True)
    employee_id = Column(Integer, ForeignKey("employees.id"), nullable=False, index=True)
    template_id = Column(Integer, ForeignKey("kpi_templates.id"), nullable=False)
    period = _enum_column(Period, nullable=False)
    year = Column(Integer, nullable=False)
    month = Column(Integer, nullable=True)
    quarter = Column(Integer, nullable=True)

    status = _enum_column(Status, nullable=False, default=Status.PENDING, index=True)
    total_score = Column(Float, nullable=False, default=0.0)

    self_eval_deadline = Column(DateTime, nullable=True)
    manager_eval_deadline = Column(DateTime, nullable=True)
    hr_review_deadline = Column(DateTime, nullable=True)
    final_confirm_deadline = Column(DateTime, nullable=True)
    time_mode = _enum_column(TimeMode, nullable=False, default=TimeMode.STANDARD)

    # Objection raised by the employee while confirming, handled by HR
    has_objection = Column(Boolean, nullable=False, default=False)
    objection_reason = Column(Text, nullable=True)
    final_comment = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    version_id = Column(Integer, nullable=False)

    employee = relationship("Employee")
    template = relationship("KPITemplate")
    scores = relationship(
        "KPIScore",
        back_populates="evaluation",
        cascade="all, delete-orphan",
        order_by="KPIScore.id",
    )
    shares = relationship(
        "EvaluationShare",
        back_populates="evaluation",
        cascade="all, delete-orphan",
    )
    comments = relationship(
        "EvaluationComment",
        back_populates="evaluation",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}


class KPIScore(Base):
    __tablename__ = "kpi_scores"
    __table_args__ = (UniqueConstraint("evaluation_id", "item_id"),)

    id = Column(Integer, primary_key=True, index=True)
    evaluation_id = Column(Integer, ForeignKey("kpi_evaluations.id"), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey("kpi_items.id"), nullable=False)

    self_score = Column(Float, nullable=True)
    self_comment = Column(Text, nullable=True)
    manager_score = Column(Float, nullable=True)
    manager_comment = Column(Text, nullable=True)
    # Only filled by the performance-rule blend
    hr_score = Column(Float, nullable=True)
    hr_comment = Column(Text, nullable=True)
    final_score = Column(Float, nullable=True)
    final_comment = Column(Text, nullable=True)
    version_id = Column(Integer, nullable=False)

    evaluation = relationship("Evaluation", back_populates="scores")
    item = relationship("KPIItem")

    __mapper_args__ = {"version_id_col": version_id}


class EvaluationShare(Base):
    __tablename__ = "evaluation_shares"

    id = Column(Integer, primary_key=True, index=True)
    evaluation_id = Column(Integer, ForeignKey("kpi_evaluations.id"), nullable=False, index=True)
    shared_to_id = Column(Integer, ForeignKey("employees.id"), nullable=False, index=True)
    shared_by_id = Column(Integer, ForeignKey("employees.id"), nullable=False)
    status = _enum_column(ShareStatus, nullable=False, default=ShareStatus.PENDING)
    message = Column(Text, nullable=True)
    deadline = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    version_id = Column(Integer, nullable=False)

    evaluation = relationship("Evaluation", back_populates="shares")
    shared_to = relationship("Employee", foreign_keys=[shared_to_id])
    shared_by = relationship("Employee", foreign_keys=[shared_by_id])
    scores = relationship(
        "ShareScore",
        back_populates="share",
        cascade="all, delete-orphan",
        order_by="ShareScore.item_id",
    )

    __mapper_args__ = {"version_id_col": version_id}


class ShareScore(Base):
    __tablename__ = "share_scores"
    __table_args__ = (UniqueConstraint("share_id", "item_id"),)

    id = Column(Integer, primary_key=True, index=True)
    share_id = Column(Integer, ForeignKey("evaluation_shares.id"), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey("kpi_items.id"), nullable=False)
    score = Column(Float, nullable=True)
    comment = Column(Text, nullable=True)
    version_id = Column(Integer, nullable=False)

    share = relationship("EvaluationShare", back_populates="scores")
    item = relationship("KPIItem")

    __mapper_args__ = {"version_id_col": version_id}


class EvaluationComment(Base):
    __tablename__ = "evaluation_comments"

    id = Column(Integer, primary_key=True, index=True)
    evaluation_id = Column(Integer, ForeignKey("kpi_evaluations.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("employees.id"), nullable=False)
    content = Column(Text, nullable=False)
    # Private comments are only visible to their author
    is_private = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    evaluation = relationship("Evaluation", back_populates="comments")
    user = relationship("Employee")


class SystemSetting(Base):
    """Key/value store for rule configuration (values are JSON text)."""

    __tablename__ = "system_settings"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(100), unique=True, index=True, nullable=False)
    value = Column(Text, nullable=False)
    type = Column(String(20), nullable=False, default="json")
