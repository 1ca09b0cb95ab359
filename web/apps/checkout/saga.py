"""Saga bookkeeping for the checkout pipeline.

Each step that produces a side effect registers a compensating action. On
failure the registered actions run in reverse order; every action is isolated
so a failing compensation is logged and does not stop the others.
"""

import logging
from typing import Callable

from .domain import CheckoutStage

logger = logging.getLogger(__name__)

Compensation = Callable[[str], None]


class Saga:
    """Tracks the current ``CheckoutStage`` and the compensation list.

    Compensations receive the failure reason (logged or stored in the order
    history by the action itself).
    """

    def __init__(self, name: str = "checkout"):
        self.name = name
        self.stage = CheckoutStage.VALIDATING
        self._compensations: list[tuple[str, Compensation]] = []

    def advance(self, stage: CheckoutStage):
        logger.debug("saga stage", extra={"saga": self.name, "stage": stage.value})
        self.stage = stage

    def add_compensation(self, label: str, action: Compensation):
        self._compensations.append((label, action))

    @property
    def pending_compensations(self) -> list[str]:
        return [label for label, _ in self._compensations]

    def compensate(self, reason: str) -> list[str]:
        """Run registered compensations newest first.

        Args:
            reason: Internal failure description passed to every action.

        Returns:
            list[str]: Labels of the compensations that themselves failed.
        """
        failed_at = self.stage
        self.stage = CheckoutStage.COMPENSATING
        failures = []
        while self._compensations:
            label, action = self._compensations.pop()
            try:
                action(reason)
            except Exception:
                logger.exception(
                    "compensation failed", extra={"saga": self.name, "compensation": label, "stage": failed_at.value}
                )
                failures.append(label)
        self.stage = CheckoutStage.FAILED
        return failures

    def complete(self):
        self._compensations.clear()
        self.stage = CheckoutStage.COMPLETED
