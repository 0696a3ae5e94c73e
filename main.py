import logging
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from sqlalchemy.orm import Session, sessionmaker

from config import get_settings
from database import SessionLocal, session_scope
from models import Budget, Transaction
from push_gateway import PushGateway, create_push_gateway
from schemas import (
    BudgetIn,
    BudgetStatusOut,
    CategoryIn,
    RegisterDeviceIn,
    TransactionIn,
    UnregisterDeviceIn,
)
from services import (
    BudgetMonitor,
    BudgetService,
    CategoryService,
    DeviceTokenService,
    TransactionService,
    get_current_user_id,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Alerts")


def get_session_factory() -> sessionmaker:
    return SessionLocal


def get_db(factory: sessionmaker = Depends(get_session_factory)):
    db = factory()
    try:
        yield db
    finally:
        db.close()


def get_push_gateway(request: Request) -> PushGateway:
    return request.app.state.push_gateway


@app.on_event("startup")
def startup_event():
    if getattr(app.state, "push_gateway", None) is None:
        app.state.push_gateway = create_push_gateway(get_settings())
        logger.info("Push gateway initialised")


def run_budget_evaluation(
    factory: sessionmaker,
    gateway: PushGateway,
    user_id: int,
    category_id: Optional[int],
) -> None:
    """Transaction-written trigger; failures end up in the log, not the caller."""
    try:
        with session_scope(factory) as session:
            BudgetMonitor(session, gateway).evaluate_budgets(user_id, category_id)
    except Exception:
        logger.exception(
            f"budget_evaluation_failed: user_id={user_id} category_id={category_id}"
        )


def _transaction_out(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "occurred_at": txn.occurred_at.isoformat(),
        "type": txn.type.value,
        "amount_cents": txn.amount_cents,
        "category_id": txn.category_id,
        "note": txn.note,
    }


def _budget_out(budget: Budget) -> dict:
    return {
        "id": budget.id,
        "category_id": budget.category_id,
        "limit_cents": budget.limit_cents,
        "period": budget.period.value,
    }


@app.post("/api/notification/register-device")
def register_device(data: RegisterDeviceIn, db: Session = Depends(get_db)):
    device = DeviceTokenService(db).upsert(
        data.token, get_current_user_id(), data.platform
    )
    return {
        "id": device.id,
        "token": device.token,
        "user_id": device.user_id,
        "platform": device.platform.value,
    }


@app.post("/api/notification/unregister-device")
def unregister_device(data: UnregisterDeviceIn, db: Session = Depends(get_db)):
    removed = DeviceTokenService(db).delete_by_token(data.token)
    return {"removed": removed}


@app.get("/api/categories")
def list_categories(db: Session = Depends(get_db)):
    return [
        {"id": c.id, "name": c.name, "type": c.type.value}
        for c in CategoryService(db).list_all()
    ]


@app.post("/api/categories")
def create_category(data: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"id": category.id, "name": category.name, "type": category.type.value}


@app.post("/api/transactions")
def create_transaction(
    data: TransactionIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    factory: sessionmaker = Depends(get_session_factory),
    gateway: PushGateway = Depends(get_push_gateway),
):
    service = TransactionService(db)
    try:
        txn = service.create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    background_tasks.add_task(
        run_budget_evaluation, factory, gateway, txn.user_id, txn.category_id
    )
    return _transaction_out(txn)


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    data: TransactionIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    factory: sessionmaker = Depends(get_session_factory),
    gateway: PushGateway = Depends(get_push_gateway),
):
    service = TransactionService(db)
    try:
        service.get(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    try:
        txn = service.update(transaction_id, data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    background_tasks.add_task(
        run_budget_evaluation, factory, gateway, txn.user_id, txn.category_id
    )
    return _transaction_out(txn)


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).delete(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"deleted": True}


@app.get("/api/budgets")
def list_budgets(db: Session = Depends(get_db)):
    return [_budget_out(b) for b in BudgetService(db).list_all()]


@app.post("/api/budgets")
def create_budget(data: BudgetIn, db: Session = Depends(get_db)):
    try:
        budget = BudgetService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _budget_out(budget)


@app.put("/api/budgets/{budget_id}")
def update_budget(budget_id: int, data: BudgetIn, db: Session = Depends(get_db)):
    service = BudgetService(db)
    try:
        service.get(budget_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    try:
        budget = service.update(budget_id, data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _budget_out(budget)


@app.delete("/api/budgets/{budget_id}")
def delete_budget(budget_id: int, db: Session = Depends(get_db)):
    try:
        BudgetService(db).delete(budget_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"deleted": True}


@app.get("/api/budgets/status")
def budget_status(
    category_id: Optional[int] = None,
    db: Session = Depends(get_db),
    gateway: PushGateway = Depends(get_push_gateway),
):
    evaluations = BudgetMonitor(db, gateway).evaluate(get_current_user_id(), category_id)
    return [
        BudgetStatusOut(
            budget_id=e.budget.id,
            category_id=e.budget.category_id,
            period=e.budget.period,
            window_start=e.window_start,
            limit_cents=e.status.limit_cents,
            spent_cents=e.status.spent_cents,
            remaining_cents=e.status.remaining_cents,
            classification=e.status.classification.value,
        )
        for e in evaluations
    ]
