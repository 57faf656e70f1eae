import logging
from typing import Optional

from fastapi import Body, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

import actions
from auth import current_owner_id
from database import SessionLocal
from errors import HTTP_STATUS_BY_KIND
from scheduler import SchedulerManager
from schemas import ActionResult

app = FastAPI(title="CoinCraft Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logging.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "error_kind": None, "error": "Internal server error"},
    )


def respond(result: ActionResult, success_status: int = 200) -> JSONResponse:
    if result.success:
        status = success_status
    else:
        status = HTTP_STATUS_BY_KIND.get(result.error_kind, 400)
    return JSONResponse(status_code=status, content=result.model_dump(mode="json"))


@app.get("/health")
def health():
    return {"status": "ok"}


# Accounts and categories


@app.post("/api/accounts")
def create_account(
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(actions.create_account(db, owner_id, payload), 201)


@app.get("/api/accounts")
def list_accounts(
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(actions.list_accounts(db, owner_id))


@app.post("/api/categories")
def create_category(
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(actions.create_category(db, owner_id, payload), 201)


@app.get("/api/categories")
def list_categories(
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(actions.list_categories(db, owner_id))


# Transactions


@app.post("/api/transactions")
def create_transaction(
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(actions.create_transaction(db, owner_id, payload), 201)


@app.get("/api/transactions")
def list_transactions(
    type: Optional[str] = None,
    account_id: Optional[str] = None,
    category_id: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    q: Optional[str] = None,
    cursor: Optional[str] = None,
    limit: int = 50,
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    filters = {
        "type": type,
        "account_id": account_id,
        "category_id": category_id,
        "date_from": date_from,
        "date_to": date_to,
        "query": q,
    }
    return respond(
        actions.list_transactions(db, owner_id, filters, cursor=cursor, limit=limit)
    )


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: str,
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(actions.get_transaction(db, owner_id, transaction_id))


@app.patch("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: str,
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(actions.update_transaction(db, owner_id, transaction_id, payload))


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: str,
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(actions.delete_transaction(db, owner_id, transaction_id))


# Allocations


@app.post("/api/envelopes")
def create_envelope(
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(actions.create_envelope(db, owner_id, payload), 201)


@app.post("/api/envelopes/transfer")
def transfer_budget(
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(actions.transfer_budget(db, owner_id, payload))


@app.post("/api/goals")
def create_goal(
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(actions.create_goal(db, owner_id, payload), 201)


@app.post("/api/goals/{goal_id}/contributions")
def contribute_to_goal(
    goal_id: str,
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(actions.contribute_to_goal(db, owner_id, goal_id, payload), 201)


@app.get("/api/goals/{goal_id}/stats")
def goal_savings_stats(
    goal_id: str,
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(actions.goal_savings_stats(db, owner_id, goal_id))


@app.get("/api/allocations")
def list_allocations(
    kind: Optional[str] = None,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(
        actions.list_allocations(db, owner_id, kind, include_inactive=include_inactive)
    )


@app.get("/api/allocations/{allocation_id}")
def get_allocation(
    allocation_id: str,
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(actions.get_allocation(db, owner_id, allocation_id))


@app.get("/api/allocations/{allocation_id}/contributions")
def allocation_contributions(
    allocation_id: str,
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(actions.allocation_contributions(db, owner_id, allocation_id))


@app.patch("/api/allocations/{allocation_id}")
def update_allocation(
    allocation_id: str,
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(actions.update_allocation(db, owner_id, allocation_id, payload))


@app.post("/api/allocations/{allocation_id}/{action}")
def set_allocation_status(
    allocation_id: str,
    action: str,
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(actions.set_allocation_status(db, owner_id, allocation_id, action))


# Statistics and recap


@app.get("/api/statistics/{report}")
def statistics(
    report: str,
    period: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    months: int = 6,
    limit: int = 5,
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(
        actions.statistics(
            db, owner_id, report, period, start, end, months=months, limit=limit
        )
    )


@app.get("/api/recap")
def recap_months(
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(actions.recap_months(db, owner_id))


@app.get("/api/recap/{month}")
def monthly_recap(
    month: str,
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(actions.monthly_recap(db, owner_id, month))


# Ledger maintenance


@app.get("/api/ledger/audit")
def audit_ledger(
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(actions.audit_ledger(db, owner_id))


@app.post("/api/ledger/repair")
def repair_ledger(
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(actions.repair_ledger(db, owner_id))


@app.post("/api/admin/rollover")
def run_rollover(
    db: Session = Depends(get_db),
    owner_id: Optional[str] = Depends(current_owner_id),
):
    return respond(actions.run_rollover(db, owner_id))
