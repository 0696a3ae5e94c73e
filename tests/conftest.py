from datetime import datetime
from typing import Optional, Sequence

import pytest

from push_gateway import DeliveryFailure, DeliveryOutcome, PushGatewayError

# Thursday; the Monday of that week is 2025-03-17.
FIXED_NOW = datetime(2025, 3, 20, 15, 30)


class FakePushGateway:
    def __init__(
        self,
        failures: Optional[dict[str, DeliveryFailure]] = None,
        error: Optional[PushGatewayError] = None,
    ) -> None:
        self.failures = failures or {}
        self.error = error
        self.calls: list[dict[str, object]] = []

    def send_multicast(
        self,
        tokens: Sequence[str],
        title: str,
        body: str,
        data: dict[str, str],
    ) -> list[DeliveryOutcome]:
        self.calls.append(
            {"tokens": list(tokens), "title": title, "body": body, "data": data}
        )
        if self.error is not None:
            raise self.error
        return [
            DeliveryOutcome(
                token=token,
                success=token not in self.failures,
                failure=self.failures.get(token),
            )
            for token in tokens
        ]


@pytest.fixture
def gateway() -> FakePushGateway:
    return FakePushGateway()


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW
