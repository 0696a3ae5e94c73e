from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from models import (
    Budget,
    Category,
    DevicePlatform,
    DeviceToken,
    Transaction,
    TransactionType,
)
from periods import Clock, local_now, window_start
from push_gateway import DeliveryFailure, PushGateway, PushGatewayError
from schemas import BudgetIn, CategoryIn, TransactionIn
from thresholds import BudgetClassification, BudgetEvaluation, BudgetStatus, evaluate

logger = logging.getLogger(__name__)


def get_current_user_id() -> int:
    return 1


def format_currency(cents: int, symbol: Optional[str] = None) -> str:
    sign = "-" if cents < 0 else ""
    amount = f"{abs(cents) / 100:,.2f}".replace(",", " ").replace(".", ",")
    if symbol:
        return f"{sign}{amount} {symbol}"
    return f"{sign}{amount}"


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.type == data.type,
                func.lower(Category.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise ValueError("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _category(self, category_id: int, txn_type: TransactionType) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        if category.type != txn_type:
            raise ValueError("Category type mismatch")
        return category

    def create(self, data: TransactionIn) -> Transaction:
        self._category(data.category_id, data.type)
        txn = Transaction(
            user_id=self.user_id,
            occurred_at=data.occurred_at,
            type=data.type,
            amount_cents=data.amount_cents,
            category_id=data.category_id,
            note=data.note,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise ValueError("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        self._category(data.category_id, data.type)
        txn.occurred_at = data.occurred_at
        txn.type = data.type
        txn.amount_cents = data.amount_cents
        txn.category_id = data.category_id
        txn.note = data.note
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()


class SpendService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def spent_since(self, since: datetime, category_id: Optional[int] = None) -> int:
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == self.user_id,
            Transaction.type == TransactionType.expense,
            Transaction.occurred_at >= since,
        )
        if category_id is not None:
            stmt = stmt.where(Transaction.category_id == category_id)
        return int(self.session.execute(stmt).scalar_one() or 0)


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.category_id.is_(None).desc(), Budget.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise ValueError("Budget not found")
        return budget

    def _check_category(self, category_id: Optional[int]) -> None:
        if category_id is None:
            return
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        if category.type != TransactionType.expense:
            raise ValueError("Budgets can only be set for expense categories")

    def create(self, data: BudgetIn) -> Budget:
        self._check_category(data.category_id)
        budget = Budget(
            user_id=self.user_id,
            category_id=data.category_id,
            limit_cents=data.limit_cents,
            period=data.period,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def update(self, budget_id: int, data: BudgetIn) -> Budget:
        budget = self.get(budget_id)
        self._check_category(data.category_id)
        budget.category_id = data.category_id
        budget.limit_cents = data.limit_cents
        budget.period = data.period
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()

    def find_applicable(self, category_id: Optional[int]) -> list[Budget]:
        scope = Budget.category_id.is_(None)
        if category_id is not None:
            scope = or_(scope, Budget.category_id == category_id)
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.user_id == self.user_id, scope)
            .order_by(Budget.category_id.is_(None).desc(), Budget.id)
        )
        return self.session.scalars(stmt).all()


class DeviceTokenService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _find(self, token: str) -> Optional[DeviceToken]:
        return self.session.scalar(select(DeviceToken).where(DeviceToken.token == token))

    def upsert(self, token: str, user_id: int, platform: DevicePlatform) -> DeviceToken:
        device = self._find(token)
        if device is None:
            device = DeviceToken(token=token, user_id=user_id, platform=platform)
            self.session.add(device)
            try:
                self.session.commit()
            except IntegrityError:
                # Registered concurrently; fall through and reassign it.
                self.session.rollback()
                device = self._find(token)
                if device is None:
                    raise
            else:
                self.session.refresh(device)
                return device

        device.user_id = user_id
        device.platform = platform
        self.session.commit()
        self.session.refresh(device)
        return device

    def list_by_user(self, user_id: int) -> set[str]:
        stmt = select(DeviceToken.token).where(DeviceToken.user_id == user_id)
        return set(self.session.scalars(stmt).all())

    def delete_by_token(self, token: str) -> bool:
        return self.delete_many([token]) > 0

    def delete_many(self, tokens: Iterable[str]) -> int:
        token_list = list(dict.fromkeys(tokens))
        if not token_list:
            return 0
        result = self.session.execute(
            delete(DeviceToken).where(DeviceToken.token.in_(token_list))
        )
        self.session.commit()
        return result.rowcount or 0


@dataclass(frozen=True)
class PushMessage:
    title: str
    body: str
    data: dict[str, str]


@dataclass
class DispatchResult:
    attempted: int = 0
    succeeded: int = 0
    pruned: list[str] = field(default_factory=list)
    transient: dict[str, DeliveryFailure] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def failed(self) -> int:
        return self.attempted - self.succeeded

    @property
    def delivered_any(self) -> bool:
        return self.succeeded > 0


def render_budget_alert(budget: Budget, status: BudgetStatus) -> PushMessage:
    settings = get_settings()
    spent = format_currency(status.spent_cents, settings.currency_symbol)
    limit = format_currency(status.limit_cents, settings.currency_symbol)
    scope = budget.scope_label
    if status.classification == BudgetClassification.exceeded:
        over = format_currency(-status.remaining_cents, settings.currency_symbol)
        title = "Budget exceeded"
        body = (
            f"{scope}: you have spent {spent} of {limit}, "
            f"{over} over your {budget.period.value} budget."
        )
    elif status.classification == BudgetClassification.warning:
        title = "Budget almost reached"
        body = (
            f"{scope}: you have spent {spent} of your "
            f"{budget.period.value} budget of {limit}."
        )
    else:
        raise ValueError("No alert for budgets within limit")
    data = {
        "type": "budget_alert",
        "budget_id": str(budget.id),
        "status": status.classification.value,
        "spent_cents": str(status.spent_cents),
        "limit_cents": str(status.limit_cents),
        "deep_link": f"{settings.deep_link_base}/budgets/{budget.id}",
    }
    return PushMessage(title=title, body=body, data=data)


class NotificationService:
    def __init__(self, session: Session, gateway: PushGateway) -> None:
        self.session = session
        self.gateway = gateway
        self.tokens = DeviceTokenService(session)

    def send_to_user(self, user_id: int, message: PushMessage) -> DispatchResult:
        tokens = sorted(self.tokens.list_by_user(user_id))
        if not tokens:
            logger.info(f"push_skipped: user_id={user_id} reason=no_devices")
            return DispatchResult()

        result = DispatchResult(attempted=len(tokens))
        try:
            outcomes = self.gateway.send_multicast(
                tokens, message.title, message.body, message.data
            )
        except PushGatewayError as exc:
            logger.warning(
                f"push_failed: user_id={user_id} tokens={len(tokens)} error={exc}"
            )
            result.error = str(exc)
            return result

        for outcome in outcomes:
            if outcome.success:
                result.succeeded += 1
                continue
            failure = outcome.failure or DeliveryFailure.unknown
            if failure.is_permanent:
                result.pruned.append(outcome.token)
            else:
                result.transient[outcome.token] = failure

        if result.pruned:
            removed = self.tokens.delete_many(result.pruned)
            logger.info(f"push_pruned: user_id={user_id} tokens_removed={removed}")
        if result.transient:
            kinds = sorted({f.value for f in result.transient.values()})
            logger.warning(
                f"push_transient_failures: user_id={user_id} "
                f"count={len(result.transient)} kinds={','.join(kinds)}"
            )
        if not result.delivered_any:
            logger.warning(
                f"push_undelivered: user_id={user_id} attempted={result.attempted}"
            )
        return result

    def dispatch(self, user_id: int, evaluation: BudgetEvaluation) -> DispatchResult:
        if not evaluation.status.needs_alert:
            return DispatchResult()
        message = render_budget_alert(evaluation.budget, evaluation.status)
        return self.send_to_user(user_id, message)


class BudgetMonitor:
    """Evaluates a user's budgets after a transaction write and alerts devices."""

    def __init__(
        self,
        session: Session,
        gateway: PushGateway,
        clock: Clock = local_now,
    ) -> None:
        self.session = session
        self.clock = clock
        self.notifications = NotificationService(session, gateway)

    def evaluate(
        self, user_id: int, category_id: Optional[int]
    ) -> list[BudgetEvaluation]:
        budgets = BudgetService(self.session, user_id).find_applicable(category_id)
        if not budgets:
            return []
        now = self.clock()
        spend = SpendService(self.session, user_id)

        def spent_for(budget: Budget) -> tuple[datetime, int]:
            start = window_start(budget.period, now)
            return start, spend.spent_since(start, budget.category_id)

        return evaluate(budgets, user_id, category_id, spent_for)

    def evaluate_budgets(
        self, user_id: int, category_id: Optional[int]
    ) -> list[BudgetEvaluation]:
        evaluations = self.evaluate(user_id, category_id)
        for evaluation in evaluations:
            status = evaluation.status
            if not status.needs_alert:
                continue
            budget_id = evaluation.budget.id
            logger.info(
                f"budget_alert: user_id={user_id} budget_id={budget_id} "
                f"status={status.classification.value} spent_cents={status.spent_cents} "
                f"limit_cents={status.limit_cents}"
            )
            try:
                self.notifications.dispatch(user_id, evaluation)
            except SQLAlchemyError:
                # Keep alerting on the remaining budgets.
                self.session.rollback()
                logger.exception(
                    f"budget_alert_dispatch_failed: user_id={user_id} "
                    f"budget_id={budget_id}"
                )
        return evaluations
