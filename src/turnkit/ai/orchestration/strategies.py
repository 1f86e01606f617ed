"""Ordered fallback chains of named attempt strategies.

A chain is a list of :class:`AttemptStrategy` objects tried in order. A strategy
that fails with an error classified under one of its ``fallback_on`` reasons
hands over to the next strategy; any other failure, or a failure of the last
strategy, propagates unchanged. Cancellation always propagates.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AbstractSet, Awaitable, Callable, Generic, Sequence, TypeVar

from .compat import ErrorClassifier, IncompatibilityReason
from .errors import TurnCancelledError

__all__ = [
    "AttemptStrategy",
    "AttemptResult",
    "StrategyFailure",
    "FallbackCallback",
    "run_strategies",
]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

FallbackCallback = Callable[[str, str, AbstractSet[IncompatibilityReason]], None]


@dataclass(slots=True, frozen=True)
class AttemptStrategy(Generic[T]):
    """One way of performing a request.

    Attributes:
        name: Stable identifier used in logs and results.
        run: Zero-argument coroutine factory performing the attempt.
        fallback_on: Reasons that hand over to the next strategy in the chain.
    """

    name: str
    run: Callable[[], Awaitable[T]]
    fallback_on: AbstractSet[IncompatibilityReason] = field(default_factory=frozenset)


@dataclass(slots=True, frozen=True)
class StrategyFailure:
    strategy: str
    reasons: frozenset[IncompatibilityReason]
    error: BaseException


@dataclass(slots=True, frozen=True)
class AttemptResult(Generic[T]):
    value: T
    strategy: str
    failures: tuple[StrategyFailure, ...] = ()


async def run_strategies(
    strategies: Sequence[AttemptStrategy[T]],
    *,
    classifier: ErrorClassifier,
    on_fallback: FallbackCallback | None = None,
) -> AttemptResult[T]:
    """Run ``strategies`` in order and return the first success."""

    if not strategies:
        raise ValueError("At least one strategy is required")

    failures: list[StrategyFailure] = []
    last_index = len(strategies) - 1
    for index, strategy in enumerate(strategies):
        try:
            value = await strategy.run()
        except (TurnCancelledError, asyncio.CancelledError):
            raise
        except Exception as exc:
            reasons = classifier.classify(exc)
            if index == last_index or not (reasons & strategy.fallback_on):
                raise
            next_name = strategies[index + 1].name
            LOGGER.warning(
                "%s rejected by backend (%s); falling back to %s",
                strategy.name,
                ", ".join(sorted(reason.value for reason in reasons)),
                next_name,
            )
            failures.append(StrategyFailure(strategy=strategy.name, reasons=reasons, error=exc))
            if on_fallback is not None:
                on_fallback(strategy.name, next_name, reasons)
            continue
        return AttemptResult(value=value, strategy=strategy.name, failures=tuple(failures))

    raise AssertionError("unreachable")  # pragma: no cover
