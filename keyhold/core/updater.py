"""Apply a small set of independent field updates concurrently.

Each update runs as its own task; the caller sees nothing until every task
has finished. Outcomes are recorded per field (tagged with the field's
position in the input), so when several updates fail none of the errors
are lost.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
import logging
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from keyhold.errors import FieldUpdateError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldUpdate:
    """One field change. ``apply`` is only awaited if ``new`` differs from ``current``."""
    field: str
    current: Any
    new: Any
    apply: Callable[[Any], Awaitable[Any]]

    @property
    def changed(self) -> bool:
        return self.current != self.new


class OutcomeStatus(str, Enum):
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class FieldOutcome:
    index: int
    field: str
    status: OutcomeStatus
    result: Any = None
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class UpdateReport:
    outcomes: List[FieldOutcome]

    @property
    def failures(self) -> List[FieldOutcome]:
        return [o for o in self.outcomes if o.status is OutcomeStatus.FAILED]

    @property
    def applied_any(self) -> bool:
        return any(o.status is not OutcomeStatus.SKIPPED for o in self.outcomes)

    @property
    def ok(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        """Raise FieldUpdateError if any update failed.

        The error keeps every failure; its ``cause`` is the first failure in
        input order.
        """
        failures = self.failures
        if failures:
            raise FieldUpdateError(failures)


async def _run(index: int, update: FieldUpdate) -> FieldOutcome:
    if not update.changed:
        return FieldOutcome(index, update.field, OutcomeStatus.SKIPPED)
    try:
        result = await update.apply(update.new)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning("Update of %s failed: %s", update.field, e)
        return FieldOutcome(index, update.field, OutcomeStatus.FAILED, error=e)
    return FieldOutcome(index, update.field, OutcomeStatus.SUCCEEDED, result=result)


async def apply_updates(updates: Sequence[FieldUpdate]) -> UpdateReport:
    """
    Run all changed updates concurrently and wait for every one of them.

    Args:
        updates: Field updates, in the order failures should be reported

    Returns:
        UpdateReport with one outcome per input update, in input order
    """
    outcomes = await asyncio.gather(*(_run(i, u) for i, u in enumerate(updates)))
    return UpdateReport(outcomes=list(outcomes))
