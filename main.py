import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Response
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from scheduler import SchedulerManager
from schemas import (
    BatchResult,
    LedgerEntryOut,
    RecurringRuleIn,
    RecurringRuleOut,
    RecurringRuleUpdate,
)
from services import LedgerService, RecurringRuleService, RuleConflictError


logger = logging.getLogger(__name__)

app = FastAPI(title="Recurring Ledger")


def _load_app_version() -> str:
    try:
        import tomllib
    except ImportError:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().enable_scheduler:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "version": APP_VERSION}


@app.get("/recurring", response_model=list[RecurringRuleOut])
def list_recurring(is_active: Optional[bool] = None, db: Session = Depends(get_db)):
    return RecurringRuleService(db).list(is_active=is_active)


@app.post("/recurring", response_model=RecurringRuleOut, status_code=201)
def create_recurring(data: RecurringRuleIn, db: Session = Depends(get_db)):
    return RecurringRuleService(db).create(data)


@app.post("/recurring/process", response_model=BatchResult)
def process_recurring(today: Optional[date] = None, db: Session = Depends(get_db)):
    try:
        return RecurringRuleService(db).process_due(today)
    except Exception as exc:
        logger.exception("manual_recurring_run_failed")
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@app.get("/recurring/{rule_id}", response_model=RecurringRuleOut)
def get_recurring(rule_id: int, db: Session = Depends(get_db)):
    try:
        return RecurringRuleService(db).get(rule_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.put("/recurring/{rule_id}", response_model=RecurringRuleOut)
def update_recurring(
    rule_id: int, changes: RecurringRuleUpdate, db: Session = Depends(get_db)
):
    service = RecurringRuleService(db)
    try:
        service.get(rule_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    try:
        return service.update(rule_id, changes)
    except RuleConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.patch("/recurring/{rule_id}/toggle", response_model=RecurringRuleOut)
def toggle_recurring(rule_id: int, db: Session = Depends(get_db)):
    try:
        return RecurringRuleService(db).toggle_active(rule_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.delete("/recurring/{rule_id}", status_code=204)
def delete_recurring(rule_id: int, db: Session = Depends(get_db)):
    try:
        RecurringRuleService(db).delete(rule_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/ledger", response_model=list[LedgerEntryOut])
def list_ledger(rule_id: Optional[int] = None, db: Session = Depends(get_db)):
    return LedgerService(db).list(origin_rule_id=rule_id)
