from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, Optional

from models import Budget

# Warning starts strictly above WARNING_NUMERATOR / WARNING_DENOMINATOR of the limit.
WARNING_NUMERATOR = 4
WARNING_DENOMINATOR = 5


class BudgetClassification(str, Enum):
    ok = "ok"
    warning = "warning"
    exceeded = "exceeded"


def classify(limit_cents: int, spent_cents: int) -> BudgetClassification:
    if spent_cents > limit_cents:
        return BudgetClassification.exceeded
    if spent_cents * WARNING_DENOMINATOR > limit_cents * WARNING_NUMERATOR:
        return BudgetClassification.warning
    return BudgetClassification.ok


@dataclass(frozen=True)
class BudgetStatus:
    limit_cents: int
    spent_cents: int
    remaining_cents: int
    classification: BudgetClassification

    @classmethod
    def compute(cls, limit_cents: int, spent_cents: int) -> "BudgetStatus":
        return cls(
            limit_cents=limit_cents,
            spent_cents=spent_cents,
            remaining_cents=limit_cents - spent_cents,
            classification=classify(limit_cents, spent_cents),
        )

    @property
    def needs_alert(self) -> bool:
        return self.classification != BudgetClassification.ok


@dataclass(frozen=True)
class BudgetEvaluation:
    budget: Budget
    window_start: datetime
    status: BudgetStatus


def is_applicable(budget: Budget, user_id: int, category_id: Optional[int]) -> bool:
    if budget.user_id != user_id:
        return False
    return budget.category_id is None or budget.category_id == category_id


def select_applicable(
    budgets: Iterable[Budget], user_id: int, category_id: Optional[int]
) -> list[Budget]:
    return [b for b in budgets if is_applicable(b, user_id, category_id)]


def evaluate(
    budgets: Iterable[Budget],
    user_id: int,
    category_id: Optional[int],
    spent_for: Callable[[Budget], tuple[datetime, int]],
) -> list[BudgetEvaluation]:
    """Classify every applicable budget on its own window and scope.

    Category and global budgets are evaluated independently; ``spent_for``
    returns the window start and the spend aggregate for one budget.
    """
    evaluations: list[BudgetEvaluation] = []
    for budget in select_applicable(budgets, user_id, category_id):
        start, spent_cents = spent_for(budget)
        evaluations.append(
            BudgetEvaluation(
                budget=budget,
                window_start=start,
                status=BudgetStatus.compute(budget.limit_cents, spent_cents),
            )
        )
    return evaluations
