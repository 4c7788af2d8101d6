"""FastAPI wrapper over the scheduling engine.

Handlers only translate payloads; every rule lives in the engine and every
rejection surfaces as a ``SchedulingError`` mapped to a JSON body by one
exception handler.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

# Ensure flat absolute imports (e.g., "import database") still resolve.
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import PolicySessionLocal, init_database  # noqa: E402
from errors import SchedulingError  # noqa: E402
from planner import assignment_to_dict  # noqa: E402
from policy import ensure_default_policy  # noqa: E402
from scheduling import SchedulingEngine  # noqa: E402
from templates import template_to_dict  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("shiftdesk.api")

_engine: Optional[SchedulingEngine] = None


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_database()
    ensure_default_policy(PolicySessionLocal)
    yield


app = FastAPI(title="Shiftdesk Scheduling API", version="0.1", lifespan=lifespan)


def get_engine() -> SchedulingEngine:
    global _engine
    if _engine is None:
        _engine = SchedulingEngine()
    return _engine


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError) -> JSONResponse:
    logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


def _actor(payload: Optional[Dict[str, Any]]) -> str:
    return str((payload or {}).get("actor") or "api").strip() or "api"


def _require(payload: Dict[str, Any], *fields: str) -> None:
    missing = [field for field in fields if payload.get(field) in (None, "")]
    if missing:
        raise HTTPException(status_code=400, detail=f"{', '.join(missing)} required")


def _assignment_payload(engine: SchedulingEngine, assignment) -> Dict[str, Any]:
    employees = engine.directory.employees_by_id([assignment.employee_id])
    employee = employees.get(assignment.employee_id)
    template_name = None
    if assignment.template_id is not None:
        template_name = engine.templates.get_template(assignment.template_id).name
    return assignment_to_dict(
        assignment,
        employee_name=employee.display_name if employee else None,
        template_name=template_name,
    )


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


# -- templates -------------------------------------------------------------


@app.post("/api/v1/templates", status_code=201)
def create_template(payload: Dict[str, Any], engine: SchedulingEngine = Depends(get_engine)) -> JSONResponse:
    _require(payload, "branch_id", "day_of_week", "start_time", "end_time")
    template = engine.templates.create_template(
        payload["branch_id"],
        payload.get("name") or "",
        payload["day_of_week"],
        payload["start_time"],
        payload["end_time"],
        role=payload.get("role") or "",
        max_staff=payload.get("max_staff", 1),
        actor=_actor(payload),
    )
    return JSONResponse(status_code=201, content=jsonable_encoder(template_to_dict(template)))


@app.get("/api/v1/templates")
def list_templates(
    branch_id: Optional[int] = Query(None),
    company_id: Optional[str] = Query(None),
    include_inactive: bool = Query(False),
    engine: SchedulingEngine = Depends(get_engine),
) -> JSONResponse:
    templates = engine.templates.list_templates(branch_id, company_id=company_id, include_inactive=include_inactive)
    return JSONResponse(content=jsonable_encoder({"templates": [template_to_dict(t) for t in templates]}))


@app.get("/api/v1/templates/{template_id}")
def get_template(template_id: int, engine: SchedulingEngine = Depends(get_engine)) -> JSONResponse:
    template = engine.templates.get_template(template_id)
    payload = template_to_dict(template)
    payload.update(engine.planner.cell_occupancy(template_id))
    return JSONResponse(content=jsonable_encoder(payload))


@app.patch("/api/v1/templates/{template_id}")
def update_template(
    template_id: int,
    payload: Dict[str, Any],
    engine: SchedulingEngine = Depends(get_engine),
) -> JSONResponse:
    actor = _actor(payload)
    edits = {
        key: payload[key]
        for key in ("name", "start_time", "end_time", "role", "max_staff", "is_active")
        if key in payload
    }
    if "is_active" in edits:
        edits["is_active"] = bool(edits["is_active"])
    if edits:
        template = engine.templates.update_template(template_id, actor=actor, **edits)
    else:
        template = engine.templates.get_template(template_id)
    return JSONResponse(content=jsonable_encoder(template_to_dict(template)))


@app.delete("/api/v1/templates/{template_id}", status_code=204)
def delete_template(template_id: int, actor: str = Query("api"), engine: SchedulingEngine = Depends(get_engine)):
    engine.templates.delete_template(template_id, actor=actor)
    return Response(status_code=204)


@app.get("/api/v1/templates/{template_id}/occupants")
def template_occupants(template_id: int, engine: SchedulingEngine = Depends(get_engine)) -> JSONResponse:
    occupants = engine.planner.list_cell_occupants(template_id)
    template = engine.templates.get_template(template_id)
    employees = engine.directory.employees_by_id(a.employee_id for a in occupants)
    rows = [
        assignment_to_dict(
            assignment,
            employee_name=employees[assignment.employee_id].display_name if assignment.employee_id in employees else None,
            template_name=template.name,
        )
        for assignment in occupants
    ]
    payload = engine.planner.cell_occupancy(template_id)
    payload["occupants"] = rows
    return JSONResponse(content=jsonable_encoder(payload))


# -- assignments -----------------------------------------------------------


@app.post("/api/v1/templates/{template_id}/assignments", status_code=201)
def place_assignment(
    template_id: int,
    payload: Dict[str, Any],
    engine: SchedulingEngine = Depends(get_engine),
) -> JSONResponse:
    _require(payload, "employee_id")
    assignment = engine.planner.place_assignment(
        template_id,
        payload["employee_id"],
        payload.get("notes"),
        role=payload.get("role"),
        actor=_actor(payload),
    )
    return JSONResponse(status_code=201, content=jsonable_encoder(_assignment_payload(engine, assignment)))


@app.post("/api/v1/assignments/ad-hoc", status_code=201)
def place_ad_hoc_assignment(payload: Dict[str, Any], engine: SchedulingEngine = Depends(get_engine)) -> JSONResponse:
    _require(payload, "employee_id", "branch_id", "day_of_week", "start_time", "end_time")
    assignment = engine.planner.place_ad_hoc_assignment(
        payload["employee_id"],
        payload["branch_id"],
        payload["day_of_week"],
        payload["start_time"],
        payload["end_time"],
        role=payload.get("role") or "",
        notes=payload.get("notes"),
        actor=_actor(payload),
    )
    return JSONResponse(status_code=201, content=jsonable_encoder(_assignment_payload(engine, assignment)))


@app.get("/api/v1/assignments")
def list_assignments(
    branch_id: Optional[int] = Query(None),
    employee_id: Optional[int] = Query(None),
    day_of_week: Optional[int] = Query(None),
    template_id: Optional[int] = Query(None),
    engine: SchedulingEngine = Depends(get_engine),
) -> JSONResponse:
    assignments = engine.planner.list_assignments(
        branch_id=branch_id,
        employee_id=employee_id,
        day_of_week=day_of_week,
        template_id=template_id,
    )
    employees = engine.directory.employees_by_id(a.employee_id for a in assignments)
    rows = [
        assignment_to_dict(
            assignment,
            employee_name=employees[assignment.employee_id].display_name if assignment.employee_id in employees else None,
        )
        for assignment in assignments
    ]
    return JSONResponse(content=jsonable_encoder({"assignments": rows}))


@app.patch("/api/v1/assignments/{assignment_id}")
def update_assignment(
    assignment_id: int,
    payload: Dict[str, Any],
    engine: SchedulingEngine = Depends(get_engine),
) -> JSONResponse:
    if "notes" not in payload:
        raise HTTPException(status_code=400, detail="notes required")
    assignment = engine.planner.update_assignment_notes(assignment_id, payload.get("notes"), actor=_actor(payload))
    return JSONResponse(content=jsonable_encoder(_assignment_payload(engine, assignment)))


@app.delete("/api/v1/assignments/{assignment_id}", status_code=204)
def remove_assignment(assignment_id: int, actor: str = Query("api"), engine: SchedulingEngine = Depends(get_engine)):
    engine.planner.remove_assignment(assignment_id, actor=actor)
    return Response(status_code=204)


@app.post("/api/v1/assignments/{assignment_id}/transition")
def transition_assignment(
    assignment_id: int,
    payload: Dict[str, Any],
    engine: SchedulingEngine = Depends(get_engine),
) -> JSONResponse:
    _require(payload, "state")
    assignment = engine.states.transition(assignment_id, payload["state"], actor=_actor(payload))
    body = _assignment_payload(engine, assignment)
    body["allowed_transitions"] = sorted(state.value for state in engine.states.allowed_transitions(assignment.operational_state))
    return JSONResponse(content=jsonable_encoder(body))


# -- projections -----------------------------------------------------------


@app.get("/api/v1/branches/{branch_id}/weeks/{week_of}")
def branch_week(branch_id: int, week_of: str, engine: SchedulingEngine = Depends(get_engine)) -> JSONResponse:
    days = engine.projector.project_week(branch_id, week_of)
    payload = {"branch_id": branch_id, "week_of": week_of, "days": {str(day): rows for day, rows in days.items()}}
    return JSONResponse(content=jsonable_encoder(payload))


@app.get("/api/v1/branches/{branch_id}/weeks/{week_of}/summary")
def branch_week_summary(branch_id: int, week_of: str, engine: SchedulingEngine = Depends(get_engine)) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder(engine.projector.week_summary(branch_id, week_of)))


@app.get("/api/v1/employees/{employee_id}/week")
def employee_week(
    employee_id: int,
    week: str = Query("current"),
    engine: SchedulingEngine = Depends(get_engine),
) -> JSONResponse:
    payload = engine.projector.project_employee_week(employee_id, week)
    payload["days"] = {str(day): rows for day, rows in payload["days"].items()}
    return JSONResponse(content=jsonable_encoder(payload))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8000)
