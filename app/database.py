from __future__ import annotations

import datetime
import json
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    func,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker
from sqlalchemy.types import Time

from slots import intervals_overlap


DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
DIRECTORY_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'directory.db').as_posix()}"
SCHEDULE_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'schedule.db').as_posix()}"
POLICY_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'policy.db').as_posix()}"

def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class DirectoryBase(DeclarativeBase):
    """Standalone metadata for branch/employee tables living in directory.db."""

    pass


class PolicyBase(DeclarativeBase):
    """Standalone metadata for policy tables living in policy.db."""

    pass


class Base(DeclarativeBase):
    """Metadata for template/assignment tables living in schedule.db."""

    pass


class Branch(DirectoryBase):
    __tablename__ = "branches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Employee(DirectoryBase):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    display_name: Mapped[str] = mapped_column(String(120), nullable=False)
    role: Mapped[str] = mapped_column(String(80), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(12), nullable=False, default="active")
    branch_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    @property
    def active(self) -> bool:
        return (self.status or "").strip().lower() == "active"


class ShiftTemplate(Base):
    __tablename__ = "shift_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    branch_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(80), nullable=False)
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)  # 1 = Monday
    start_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    role: Mapped[str] = mapped_column(String(80), nullable=False, default="")
    max_staff: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    assignments: Mapped[List["ShiftAssignment"]] = relationship(back_populates="template")


class ShiftAssignment(Base):
    __tablename__ = "shift_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    template_id: Mapped[int | None] = mapped_column(
        ForeignKey("shift_templates.id", ondelete="SET NULL"), nullable=True, index=True
    )
    employee_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    branch_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    role: Mapped[str] = mapped_column(String(80), nullable=False, default="")
    notes: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    ad_hoc: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    operational_state: Mapped[str] = mapped_column(String(16), nullable=False, default="INACTIVE")
    created_by: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    template: Mapped[Optional[ShiftTemplate]] = relationship(back_populates="assignments")

    __mapper_args__ = {"version_id_col": version_id}


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="ShiftAssignment")
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def payload_dict(self) -> Dict[str, Any]:
        try:
            value = json.loads(self.payloadJSON or "{}")
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass
        return {}


class Policy(PolicyBase):
    __tablename__ = "policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    paramsJSON: Mapped[str] = mapped_column(String(8000), nullable=False, default="{}")
    lastEditedBy: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    lastEditedAt: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("name", name="uq_policies_name"),
    )

    def params_dict(self) -> Dict:
        try:
            value = json.loads(self.paramsJSON or "{}")
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass
        return {}


directory_engine = create_engine(
    DIRECTORY_DATABASE_URL,
    echo=False,
    future=True,
)
schedule_engine = create_engine(
    SCHEDULE_DATABASE_URL,
    echo=False,
    future=True,
)
policy_engine = create_engine(
    POLICY_DATABASE_URL,
    echo=False,
    future=True,
)
SessionLocal = sessionmaker(bind=schedule_engine, expire_on_commit=False, future=True)
DirectorySessionLocal = sessionmaker(bind=directory_engine, expire_on_commit=False, future=True)
PolicySessionLocal = sessionmaker(bind=policy_engine, expire_on_commit=False, future=True)


def init_database() -> None:
    DirectoryBase.metadata.create_all(directory_engine)
    Base.metadata.create_all(schedule_engine)
    PolicyBase.metadata.create_all(policy_engine)


@contextmanager
def _policy_session(session) -> Iterator:
    """Yield a session bound to policy.db, opening one when ``session`` points at another store."""
    bind = getattr(session, "bind", None)
    if session is not None and bind is not schedule_engine and bind is not directory_engine:
        yield session
        return
    with PolicySessionLocal() as owned:
        yield owned


def get_policies(session) -> List[Policy]:
    with _policy_session(session) as policy_session:
        return list(policy_session.scalars(select(Policy).order_by(Policy.name.asc(), Policy.id.asc())))


def upsert_policy(session, name: str, params_dict: Dict, *, edited_by: str = "system") -> Policy:
    """Create or overwrite a named policy and make it the most recently edited one."""
    payload = json.dumps(params_dict if isinstance(params_dict, dict) else {})
    with _policy_session(session) as policy_session:
        policy = policy_session.scalars(select(Policy).where(Policy.name == name)).first()
        if policy is None:
            policy = Policy(name=name)
            policy_session.add(policy)
        policy.paramsJSON = payload
        policy.lastEditedBy = edited_by
        policy.lastEditedAt = utcnow()
        policy_session.commit()
        policy_session.refresh(policy)
        return policy


def get_active_policy(session) -> Optional[Policy]:
    with _policy_session(session) as policy_session:
        stmt = select(Policy).order_by(Policy.lastEditedAt.desc(), Policy.id.desc())
        return policy_session.scalars(stmt).first()


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "ShiftAssignment",
    target_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """Stage an audit entry on ``session``; the caller's transaction commits it."""
    log = AuditLog(
        user_id=user_id or "system",
        action=action,
        target_type=target_type,
        target_id=target_id,
        payloadJSON=json.dumps(payload or {}, default=str),
    )
    session.add(log)
    return log


def list_audit_log(session, *, target_type: Optional[str] = None, target_id: Optional[int] = None) -> List[AuditLog]:
    stmt = select(AuditLog).order_by(AuditLog.created_at.asc(), AuditLog.id.asc())
    if target_type:
        stmt = stmt.where(AuditLog.target_type == target_type)
    if target_id is not None:
        stmt = stmt.where(AuditLog.target_id == target_id)
    return list(session.scalars(stmt))


def count_occupants(session, template_id: int) -> int:
    stmt = select(func.count(ShiftAssignment.id)).where(ShiftAssignment.template_id == template_id)
    return int(session.execute(stmt).scalar() or 0)


def find_overlap(
    session,
    employee_id: int,
    day_of_week: int,
    start_time: datetime.time,
    end_time: datetime.time,
    *,
    exclude_template_id: Optional[int] = None,
) -> Optional[ShiftAssignment]:
    """Return the first assignment of the employee overlapping the window on that day.

    Windows are half-open: [09:00, 13:00) and [13:00, 17:00) do not overlap.
    """
    stmt = (
        select(ShiftAssignment)
        .where(
            ShiftAssignment.employee_id == employee_id,
            ShiftAssignment.day_of_week == day_of_week,
        )
        .order_by(ShiftAssignment.start_time.asc(), ShiftAssignment.id.asc())
    )
    for existing in session.scalars(stmt):
        if exclude_template_id is not None and existing.template_id == exclude_template_id:
            continue
        if intervals_overlap(start_time, end_time, existing.start_time, existing.end_time):
            return existing
    return None
