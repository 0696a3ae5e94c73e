from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from conftest import FakePushGateway
from database import Base
from models import BudgetPeriod, DevicePlatform, TransactionType
from push_gateway import DeliveryFailure
from schemas import BudgetIn, CategoryIn, TransactionIn
from services import (
    BudgetMonitor,
    BudgetService,
    CategoryService,
    DeviceTokenService,
    SpendService,
    TransactionService,
)
from thresholds import BudgetClassification


def _expense(session: Session, category_id: int, cents: int, when: datetime, user_id=None):
    TransactionService(session, user_id).create(
        TransactionIn(
            occurred_at=when,
            type=TransactionType.expense,
            amount_cents=cents,
            category_id=category_id,
            note="Spend",
        )
    )


def test_spend_with_no_transactions_is_zero() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        assert SpendService(session).spent_since(datetime(2025, 3, 1)) == 0
        assert SpendService(session).spent_since(datetime(2025, 3, 1), 42) == 0


def test_spend_counts_only_expenses_in_window_and_scope() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        categories = CategoryService(session)
        food = categories.create(CategoryIn(name="Food", type=TransactionType.expense))
        travel = categories.create(
            CategoryIn(name="Travel", type=TransactionType.expense)
        )
        salary = categories.create(
            CategoryIn(name="Salary", type=TransactionType.income)
        )

        _expense(session, food.id, 1_000, datetime(2025, 3, 1, 0, 0))
        _expense(session, food.id, 2_000, datetime(2025, 3, 10, 12, 0))
        _expense(session, travel.id, 4_000, datetime(2025, 3, 11, 12, 0))
        _expense(session, food.id, 8_000, datetime(2025, 2, 28, 23, 59))
        TransactionService(session).create(
            TransactionIn(
                occurred_at=datetime(2025, 3, 5),
                type=TransactionType.income,
                amount_cents=100_000,
                category_id=salary.id,
            )
        )

        spend = SpendService(session)
        assert spend.spent_since(datetime(2025, 3, 1)) == 7_000
        assert spend.spent_since(datetime(2025, 3, 1), food.id) == 3_000
        assert SpendService(session, user_id=2).spent_since(datetime(2025, 3, 1)) == 0


def test_category_and_global_budgets_dispatch_independently(
    gateway, fixed_clock
) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = CategoryService(session).create(
            CategoryIn(name="Food", type=TransactionType.expense)
        )
        budgets = BudgetService(session)
        global_budget = budgets.create(BudgetIn(limit_cents=1_000_000))
        food_budget = budgets.create(
            BudgetIn(limit_cents=500_000, category_id=food.id)
        )
        DeviceTokenService(session).upsert("phone", 1, DevicePlatform.ios)
        _expense(session, food.id, 1_100_000, datetime(2025, 3, 18, 9, 0))

        evaluations = BudgetMonitor(session, gateway, clock=fixed_clock).evaluate_budgets(
            1, food.id
        )

        by_id = {e.budget.id: e.status for e in evaluations}
        assert by_id[global_budget.id].classification == BudgetClassification.exceeded
        assert by_id[food_budget.id].classification == BudgetClassification.exceeded
        assert len(gateway.calls) == 2
        assert {c["data"]["budget_id"] for c in gateway.calls} == {
            str(global_budget.id),
            str(food_budget.id),
        }


def test_budget_within_limit_sends_nothing(gateway, fixed_clock) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = CategoryService(session).create(
            CategoryIn(name="Food", type=TransactionType.expense)
        )
        BudgetService(session).create(
            BudgetIn(limit_cents=1_000_000, category_id=food.id)
        )
        DeviceTokenService(session).upsert("phone", 1, DevicePlatform.ios)
        _expense(session, food.id, 500_000, datetime(2025, 3, 18))

        evaluations = BudgetMonitor(session, gateway, clock=fixed_clock).evaluate_budgets(
            1, food.id
        )

        assert evaluations[0].status.classification == BudgetClassification.ok
        assert evaluations[0].status.remaining_cents == 500_000
        assert gateway.calls == []


def test_weekly_budget_ignores_spend_before_monday(gateway, fixed_clock) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = CategoryService(session).create(
            CategoryIn(name="Food", type=TransactionType.expense)
        )
        BudgetService(session).create(
            BudgetIn(
                limit_cents=100_000, category_id=food.id, period=BudgetPeriod.weekly
            )
        )
        _expense(session, food.id, 90_000, datetime(2025, 3, 16, 23, 0))
        _expense(session, food.id, 85_000, datetime(2025, 3, 17, 0, 0))

        (evaluation,) = BudgetMonitor(session, gateway, clock=fixed_clock).evaluate(
            1, food.id
        )

        assert evaluation.window_start == datetime(2025, 3, 17)
        assert evaluation.status.spent_cents == 85_000
        assert evaluation.status.classification == BudgetClassification.warning


def test_no_applicable_budget_is_a_noop(gateway, fixed_clock) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        categories = CategoryService(session)
        food = categories.create(CategoryIn(name="Food", type=TransactionType.expense))
        travel = categories.create(
            CategoryIn(name="Travel", type=TransactionType.expense)
        )
        BudgetService(session).create(
            BudgetIn(limit_cents=1_000, category_id=travel.id)
        )
        BudgetService(session, user_id=2).create(BudgetIn(limit_cents=1_000))
        _expense(session, food.id, 5_000, datetime(2025, 3, 18))

        evaluations = BudgetMonitor(session, gateway, clock=fixed_clock).evaluate_budgets(
            1, food.id
        )

        assert evaluations == []
        assert gateway.calls == []


def test_aggregate_failure_propagates(gateway, fixed_clock, monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    def _fail(self, since, category_id=None):
        raise OperationalError("SELECT sum", {}, Exception("database is locked"))

    with Session(engine) as session:
        BudgetService(session).create(BudgetIn(limit_cents=1_000))
        monkeypatch.setattr(SpendService, "spent_since", _fail)

        with pytest.raises(OperationalError):
            BudgetMonitor(session, gateway, clock=fixed_clock).evaluate_budgets(1, None)
        assert gateway.calls == []


def test_budget_rejects_income_category() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        salary = CategoryService(session).create(
            CategoryIn(name="Salary", type=TransactionType.income)
        )
        with pytest.raises(ValueError):
            BudgetService(session).create(
                BudgetIn(limit_cents=1_000, category_id=salary.id)
            )


def test_pruning_failure_does_not_stop_other_budget_alerts(
    fixed_clock, monkeypatch
) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = CategoryService(session).create(
            CategoryIn(name="Food", type=TransactionType.expense)
        )
        budgets = BudgetService(session)
        budgets.create(BudgetIn(limit_cents=1_000))
        budgets.create(BudgetIn(limit_cents=1_000, category_id=food.id))
        registry = DeviceTokenService(session)
        registry.upsert("alive", 1, DevicePlatform.ios)
        registry.upsert("dead", 1, DevicePlatform.android)
        _expense(session, food.id, 2_000, datetime(2025, 3, 18))

        def _fail(self, tokens):
            raise OperationalError("DELETE", {}, Exception("database is locked"))

        monkeypatch.setattr(DeviceTokenService, "delete_many", _fail)
        gateway = FakePushGateway(failures={"dead": DeliveryFailure.invalid_token})

        evaluations = BudgetMonitor(
            session, gateway, clock=fixed_clock
        ).evaluate_budgets(1, food.id)

        assert len(evaluations) == 2
        assert len(gateway.calls) == 2
