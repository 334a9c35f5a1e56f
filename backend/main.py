import logging
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, Depends, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from sqlalchemy.orm import Session
from jose import JWTError

from db import Base, engine, get_db
import comments
import deadlines
import evaluations
import models
import schemas
import scoring
import settings
import shares
import workflow
from auth_utils import (
    hash_password,
    verify_password,
    create_access_token,
    decode_access_token,
)
from config import CORS_ORIGINS, LOG_LEVEL
from errors import KPIError
from weights import PerformanceRule

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create all database tables (if they don't already exist)
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="KPI Evaluation API",
    description="Backend API for KPI templates, staged performance evaluations, delegated scoring and authentication.",
    version="1.0.0",
)

# CORS: allow the frontend to call this API
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Reads "Authorization: Bearer <token>"
oauth2_scheme = APIKeyHeader(name="Authorization")


@app.exception_handler(KPIError)
def kpi_error_handler(request: Request, exc: KPIError):
    """Render every domain error as {"error": code, "message": ..., **details}."""
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


# =====================================================
# AUTH HELPERS / DEPENDENCIES
# =====================================================

def get_current_employee(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> models.Employee:
    """
    Decode JWT token and return the current employee.
    Raises 401 if token is invalid, expired, or employee not found.
    """

    # If the header value starts with "Bearer ", strip it so we only decode the raw token.
    if token.lower().startswith("bearer "):
        token = token.split(" ", 1)[1].strip()

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials.",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = decode_access_token(token)
        employee_id = payload.get("employee_id")
        if employee_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    employee = db.query(models.Employee).filter(models.Employee.id == employee_id).first()
    if employee is None:
        raise credentials_exception

    return employee


def get_current_active_employee(
    current_employee: models.Employee = Depends(get_current_employee),
) -> models.Employee:
    """
    Ensure the account is active.
    """
    if not current_employee.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Inactive account.",
        )
    return current_employee


def get_current_hr(
    current_employee: models.Employee = Depends(get_current_active_employee),
) -> models.Employee:
    """
    Ensure the caller is HR.
    """
    if current_employee.role != models.Role.HR:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="HR privileges required.",
        )
    return current_employee


# =====================================================
# RESPONSE HELPERS
# =====================================================

def evaluation_out(evaluation: models.Evaluation, detail: bool = False):
    """Serialize an evaluation with its read-time fields filled in."""
    schema = schemas.EvaluationDetail if detail else schemas.EvaluationOut
    out = schema.model_validate(evaluation)
    deadline = workflow.current_deadline(evaluation)
    out.awaiting = workflow.STATUS_VIEWS[evaluation.status].awaiting
    out.is_overdue = deadlines.is_overdue(deadline)
    out.remaining_days = deadlines.remaining_days(deadline)
    return out


def share_out(share: models.EvaluationShare) -> schemas.ShareOut:
    out = schemas.ShareOut.model_validate(share)
    out.status = shares.effective_status(share)
    return out


# =====================================================
# BASIC ROOT / HEALTH
# =====================================================

@app.get("/")
def read_root():
    return {"message": "KPI Evaluation API is running"}


@app.get("/health")
def health_check():
    return {"status": "ok"}


# =====================================================
# AUTH
# =====================================================

@app.post("/auth/login", response_model=schemas.LoginResponse)
def login(login_in: schemas.LoginRequest, db: Session = Depends(get_db)):
    """
    Login with email + password.

    Returns:
    - access_token (JWT)
    - employee info (id, name, email, role, manager_id, is_active)
    """
    employee = (
        db.query(models.Employee).filter(models.Employee.email == login_in.email).first()
    )

    if not employee or not verify_password(login_in.password, employee.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password.",
        )

    if not employee.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is inactive.",
        )

    token_data = {
        "sub": employee.email,
        "employee_id": employee.id,
        "role": employee.role.value,
    }

    access_token = create_access_token(token_data)

    return schemas.LoginResponse(
        access_token=access_token,
        token_type="bearer",
        user=employee,
    )


@app.get("/auth/me", response_model=schemas.EmployeeOut)
def read_current_employee(
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    """
    Return the currently authenticated employee (requires valid token).
    """
    return current_employee


# =====================================================
# EMPLOYEES (role-based)
# =====================================================

@app.post(
    "/employees",
    response_model=schemas.EmployeeOut,
    status_code=status.HTTP_201_CREATED,
)
def create_employee(
    employee_in: schemas.EmployeeCreate,
    db: Session = Depends(get_db),
    current_hr: models.Employee = Depends(get_current_hr),
):
    """
    Register a new employee account.
    Only HR can create employees.
    """
    existing = (
        db.query(models.Employee)
        .filter(models.Employee.email == employee_in.email)
        .first()
    )
    if existing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="An employee with this email already exists.",
        )

    if employee_in.manager_id is not None:
        manager = (
            db.query(models.Employee)
            .filter(models.Employee.id == employee_in.manager_id)
            .first()
        )
        if not manager:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Employee with id {employee_in.manager_id} does not exist.",
            )

    employee = models.Employee(
        name=employee_in.name,
        email=employee_in.email,
        password_hash=hash_password(employee_in.password),
        role=employee_in.role,
        is_active=employee_in.is_active,
        manager_id=employee_in.manager_id,
    )
    db.add(employee)
    db.commit()
    db.refresh(employee)
    logger.info("Employee %s created by HR %s", employee.id, current_hr.id)
    return employee


@app.get("/employees", response_model=List[schemas.EmployeeOut])
def list_employees(
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    """
    List employees.

    - HR: see all employees
    - Manager: see themselves and their direct reports
    - Employee: see only their own record
    """
    query = db.query(models.Employee)
    if current_employee.role == models.Role.HR:
        return query.order_by(models.Employee.id).all()

    if current_employee.role == models.Role.MANAGER:
        return (
            query.filter(
                (models.Employee.id == current_employee.id)
                | (models.Employee.manager_id == current_employee.id)
            )
            .order_by(models.Employee.id)
            .all()
        )

    return [current_employee]


@app.get("/employees/{employee_id}", response_model=schemas.EmployeeOut)
def get_employee(
    employee_id: int,
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    """
    Get a single employee by ID.

    - HR: can view any employee
    - Manager: themselves and direct reports
    - Employee: can only view themselves
    """
    employee = (
        db.query(models.Employee)
        .filter(models.Employee.id == employee_id)
        .first()
    )
    if not employee:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Employee with id {employee_id} not found",
        )

    if current_employee.role == models.Role.HR:
        return employee
    if employee.id == current_employee.id or employee.manager_id == current_employee.id:
        return employee

    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="You can only view yourself and your direct reports.",
    )


# =====================================================
# KPI TEMPLATES
# =====================================================

@app.post(
    "/templates",
    response_model=schemas.TemplateOut,
    status_code=status.HTTP_201_CREATED,
)
def create_template(
    template_in: schemas.TemplateCreate,
    db: Session = Depends(get_db),
    current_hr: models.Employee = Depends(get_current_hr),
):
    """
    Create a KPI template with its items.
    Only HR can create templates.
    """
    template = models.KPITemplate(
        name=template_in.name,
        description=template_in.description,
        period=template_in.period,
        items=[
            models.KPIItem(
                name=item.name,
                description=item.description,
                max_score=item.max_score,
                order=item.order,
            )
            for item in template_in.items
        ],
    )
    db.add(template)
    db.commit()
    db.refresh(template)
    return template


@app.get("/templates", response_model=List[schemas.TemplateOut])
def list_templates(
    period: Optional[models.Period] = None,
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    query = db.query(models.KPITemplate)
    if period is not None:
        query = query.filter(models.KPITemplate.period == period)
    return query.order_by(models.KPITemplate.id).all()


@app.get("/templates/{template_id}", response_model=schemas.TemplateOut)
def get_template(
    template_id: int,
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    template = (
        db.query(models.KPITemplate)
        .filter(models.KPITemplate.id == template_id)
        .first()
    )
    if not template:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Template with id {template_id} not found",
        )
    return template


# =====================================================
# DEADLINES & RULE SETTINGS
# =====================================================

@app.get("/deadlines/plan", response_model=schemas.DeadlinePlanOut)
def preview_deadline_plan(
    period: models.Period,
    year: int,
    month: Optional[int] = None,
    quarter: Optional[int] = None,
    db: Session = Depends(get_db),
    current_hr: models.Employee = Depends(get_current_hr),
):
    """
    Preview the deadlines an evaluation created now would get.
    Only HR (who creates evaluations) can preview.
    """
    evaluations.validate_identity(period, year, month, quarter)
    rules = settings.get_deadline_rules(db)
    plan = deadlines.plan_deadlines(rules, period, year, month, quarter)
    return schemas.DeadlinePlanOut.model_validate(plan)


@app.get("/settings/deadline-rules", response_model=deadlines.DeadlineRules)
def read_deadline_rules(
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    return settings.get_deadline_rules(db)


@app.put("/settings/deadline-rules", response_model=deadlines.DeadlineRules)
def write_deadline_rules(
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    current_hr: models.Employee = Depends(get_current_hr),
):
    """
    Replace the deadline rules.
    Only HR can change them; invalid rule sets are rejected with 400.
    """
    return settings.update_deadline_rules(db, payload)


@app.get("/settings/performance-rule", response_model=PerformanceRule)
def read_performance_rule(
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    return settings.get_performance_rule(db)


@app.put("/settings/performance-rule", response_model=PerformanceRule)
def write_performance_rule(
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    current_hr: models.Employee = Depends(get_current_hr),
):
    """
    Replace the scoring weights.
    Only HR can change them; each weight set must add up to 100.
    """
    return settings.update_performance_rule(db, payload)


# =====================================================
# EVALUATIONS
# =====================================================

@app.post(
    "/evaluations",
    response_model=schemas.EvaluationCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_evaluations(
    evaluation_in: schemas.EvaluationCreate,
    db: Session = Depends(get_db),
    current_hr: models.Employee = Depends(get_current_hr),
):
    """
    Start evaluations for one or more employees.

    - HR only
    - deadlines follow the configured tiers unless all four are supplied
    - set force=true to go ahead when the period is nearly over
    """
    created, plan = evaluations.create_evaluations(
        db,
        current_hr,
        evaluation_in.employee_ids,
        evaluation_in.template_id,
        evaluation_in.period,
        evaluation_in.year,
        month=evaluation_in.month,
        quarter=evaluation_in.quarter,
        custom_deadlines={
            name: getattr(evaluation_in, name) for name in deadlines.STAGE_FIELDS
        },
        force=evaluation_in.force,
    )
    return schemas.EvaluationCreateResponse(
        evaluations=[evaluation_out(evaluation) for evaluation in created],
        plan=schemas.DeadlinePlanOut.model_validate(plan),
    )


@app.get("/evaluations", response_model=schemas.EvaluationPage)
def list_evaluations(
    employee_id: Optional[int] = None,
    status_filter: Optional[models.Status] = Query(None, alias="status"),
    period: Optional[models.Period] = None,
    year: Optional[int] = None,
    month: Optional[int] = None,
    quarter: Optional[int] = None,
    manager_id: Optional[int] = None,
    page: int = 1,
    page_size: int = 10,
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    """
    List evaluations, newest first.

    - HR: all evaluations
    - Manager: their own and their direct reports'
    - Employee: only their own
    """
    result = evaluations.list_evaluations(
        db,
        current_employee,
        employee_id=employee_id,
        status=status_filter,
        period=period,
        year=year,
        month=month,
        quarter=quarter,
        manager_id=manager_id,
        page=page,
        page_size=page_size,
    )
    return schemas.EvaluationPage(
        items=[evaluation_out(evaluation) for evaluation in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        stats=result.stats,
    )


@app.get("/evaluations/awaiting", response_model=List[schemas.EvaluationOut])
def list_awaiting_evaluations(
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    """
    Evaluations waiting on the caller's next action.
    """
    return [
        evaluation_out(evaluation)
        for evaluation in evaluations.list_awaiting(db, current_employee)
    ]


@app.get("/evaluations/overdue", response_model=List[schemas.EvaluationOut])
def list_overdue_evaluations(
    db: Session = Depends(get_db),
    current_hr: models.Employee = Depends(get_current_hr),
):
    return [
        evaluation_out(evaluation)
        for evaluation in evaluations.find_overdue_evaluations(db)
    ]


@app.get("/evaluations/{evaluation_id}", response_model=schemas.EvaluationDetail)
def get_evaluation(
    evaluation_id: int,
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    """
    Get one evaluation with its per-item scores.

    - HR, the employee, their direct manager and share delegates can view
    """
    evaluation = evaluations.get_evaluation(db, evaluation_id, current_employee)
    return evaluation_out(evaluation, detail=True)


@app.delete("/evaluations/{evaluation_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_evaluation(
    evaluation_id: int,
    db: Session = Depends(get_db),
    current_hr: models.Employee = Depends(get_current_hr),
):
    evaluations.delete_evaluation(db, evaluation_id, current_hr)
    return None


@app.post(
    "/evaluations/{evaluation_id}/transitions/{stage}",
    response_model=schemas.EvaluationOut,
)
def run_transition(
    evaluation_id: int,
    stage: str,
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    """
    Complete a stage: self, manager, hr or confirm.

    - self / confirm: the evaluated employee
    - manager: the employee's direct manager
    - hr: any HR user
    """
    evaluation = workflow.transition_stage(db, evaluation_id, current_employee, stage)
    return evaluation_out(evaluation)


@app.post("/evaluations/{evaluation_id}/objection", response_model=schemas.EvaluationOut)
def submit_objection(
    evaluation_id: int,
    objection_in: schemas.ObjectionCreate,
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    """
    Dispute the reviewed result before confirming (employee, once).
    """
    evaluation = evaluations.submit_objection(
        db, evaluation_id, current_employee, objection_in.reason
    )
    return evaluation_out(evaluation)


@app.post(
    "/evaluations/{evaluation_id}/objection/handle",
    response_model=schemas.EvaluationOut,
)
def handle_objection(
    evaluation_id: int,
    handle_in: schemas.ObjectionHandle,
    db: Session = Depends(get_db),
    current_hr: models.Employee = Depends(get_current_hr),
):
    """
    Settle an objection with an adjusted total (HR only).
    """
    evaluation = evaluations.handle_objection(
        db,
        evaluation_id,
        current_hr,
        handle_in.total_score,
        handle_in.final_comment,
    )
    return evaluation_out(evaluation)


@app.post("/evaluations/{evaluation_id}/apply-rule", response_model=schemas.EvaluationDetail)
def apply_performance_rule(
    evaluation_id: int,
    db: Session = Depends(get_db),
    current_hr: models.Employee = Depends(get_current_hr),
):
    """
    Blend self, delegated and manager scores into HR scores (HR review only).
    """
    evaluation = evaluations.apply_performance_rule(db, evaluation_id, current_hr)
    return evaluation_out(evaluation, detail=True)


# =====================================================
# SCORES
# =====================================================

@app.put("/scores/{score_id}/self", response_model=schemas.ScoreOut)
def update_self_score(
    score_id: int,
    score_in: schemas.ScoreUpdate,
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    """
    Evaluated employee, while the evaluation is pending.
    """
    return scoring.set_self_score(
        db, score_id, current_employee, score_in.score, score_in.comment
    )


@app.put("/scores/{score_id}/manager", response_model=schemas.ScoreOut)
def update_manager_score(
    score_id: int,
    score_in: schemas.ScoreUpdate,
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    """
    Direct manager, after the self evaluation.
    """
    return scoring.set_manager_score(
        db, score_id, current_employee, score_in.score, score_in.comment
    )


@app.put("/scores/{score_id}/hr", response_model=schemas.ScoreOut)
def update_hr_score(
    score_id: int,
    score_in: schemas.ScoreUpdate,
    db: Session = Depends(get_db),
    current_hr: models.Employee = Depends(get_current_hr),
):
    """
    HR, during HR review.
    """
    return scoring.set_hr_score(db, score_id, current_hr, score_in.score, score_in.comment)


# =====================================================
# SHARES (delegated scoring)
# =====================================================

@app.post(
    "/evaluations/{evaluation_id}/shares",
    response_model=List[schemas.ShareOut],
    status_code=status.HTTP_201_CREATED,
)
def create_shares(
    evaluation_id: int,
    share_in: schemas.ShareCreate,
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    """
    Ask other people to score an evaluation.

    - the employee's direct manager or HR
    """
    created = shares.create_share(
        db,
        evaluation_id,
        current_employee,
        share_in.shared_to_ids,
        message=share_in.message,
        deadline=share_in.deadline,
    )
    return [share_out(share) for share in created]


@app.get("/evaluations/{evaluation_id}/shares", response_model=List[schemas.ShareOut])
def list_evaluation_shares(
    evaluation_id: int,
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    return [
        share_out(share)
        for share in shares.list_shares(db, evaluation_id, current_employee)
    ]


@app.get(
    "/evaluations/{evaluation_id}/shares/summary",
    response_model=List[schemas.ShareSummaryItem],
)
def read_share_summary(
    evaluation_id: int,
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    """
    Per-item averages of the completed delegated scores (informational).
    """
    return shares.get_share_summary(db, evaluation_id, current_employee)


@app.get("/shares/mine", response_model=List[schemas.ShareOut])
def list_my_shares(
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    return [share_out(share) for share in shares.list_my_shares(db, current_employee)]


@app.get("/shares/{share_id}", response_model=schemas.ShareOut)
def get_share(
    share_id: int,
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    return share_out(shares.get_share(db, share_id, current_employee))


@app.put("/shares/{share_id}/scores", response_model=schemas.ShareScoreOut)
def update_share_score(
    share_id: int,
    score_in: schemas.ShareScoreUpdate,
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    """
    Delegate only, while the share is pending.
    """
    return shares.update_share_score(
        db,
        share_id,
        score_in.item_id,
        current_employee,
        score_in.score,
        score_in.comment,
    )


@app.post("/shares/{share_id}/submit", response_model=schemas.ShareOut)
def submit_share(
    share_id: int,
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    return share_out(shares.submit_share(db, share_id, current_employee))


@app.delete("/shares/{share_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_share(
    share_id: int,
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    """
    Withdraw a share (only whoever created it).
    """
    shares.delete_share(db, share_id, current_employee)
    return None


# =====================================================
# COMMENTS
# =====================================================

@app.get(
    "/evaluations/{evaluation_id}/comments",
    response_model=List[schemas.CommentOut],
)
def list_comments(
    evaluation_id: int,
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    return comments.list_comments(db, evaluation_id, current_employee)


@app.post(
    "/evaluations/{evaluation_id}/comments",
    response_model=schemas.CommentOut,
    status_code=status.HTTP_201_CREATED,
)
def create_comment(
    evaluation_id: int,
    comment_in: schemas.CommentCreate,
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    """
    Anyone who can view the evaluation may comment.
    Private comments are only shown to their author.
    """
    return comments.create_comment(
        db,
        evaluation_id,
        current_employee,
        comment_in.content,
        is_private=comment_in.is_private,
    )


@app.put("/comments/{comment_id}", response_model=schemas.CommentOut)
def update_comment(
    comment_id: int,
    comment_in: schemas.CommentUpdate,
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    return comments.update_comment(
        db,
        comment_id,
        current_employee,
        comment_in.content,
        is_private=comment_in.is_private,
    )


@app.delete("/comments/{comment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_comment(
    comment_id: int,
    db: Session = Depends(get_db),
    current_employee: models.Employee = Depends(get_current_active_employee),
):
    comments.delete_comment(db, comment_id, current_employee)
    return None
