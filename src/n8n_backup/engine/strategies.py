"""Merge strategies for applying an object to a target platform.

Each ``MergeStrategy`` variant has exactly one decision function.  A
decision only depends on whether the target already holds the object id;
the reconciler then issues a create (absent) or update (present).

- ``source-wins``:     always apply (default).
- ``target-wins``:     skip when the target already has the id.
- ``update-existing``: skip when the target lacks the id.
- ``add-missing``:     skip when the target already has the id.

``parse_strategy()`` maps config/CLI strings to variants.
"""

from __future__ import annotations

from typing import Callable, NamedTuple

from n8n_backup.engine.models import MergeStrategy, SkipReason


class StrategyDecision(NamedTuple):
    """Whether to apply an object, and why not when skipping."""

    apply: bool
    skip_reason: SkipReason = SkipReason.NONE
    message: str = ""


_APPLY = StrategyDecision(apply=True)


def _source_wins(exists: bool) -> StrategyDecision:
    return _APPLY


def _target_wins(exists: bool) -> StrategyDecision:
    if exists:
        return StrategyDecision(
            False,
            SkipReason.DUPLICATE,
            "target already has this object (target-wins)",
        )
    return _APPLY


def _update_existing(exists: bool) -> StrategyDecision:
    if not exists:
        return StrategyDecision(
            False,
            SkipReason.NONE,
            "target does not have this object (update-existing)",
        )
    return _APPLY


def _add_missing(exists: bool) -> StrategyDecision:
    if exists:
        return StrategyDecision(
            False,
            SkipReason.DUPLICATE,
            "target already has this object (add-missing)",
        )
    return _APPLY


_STRATEGY_MAP: dict[MergeStrategy, Callable[[bool], StrategyDecision]] = {
    MergeStrategy.SOURCE_WINS: _source_wins,
    MergeStrategy.TARGET_WINS: _target_wins,
    MergeStrategy.UPDATE_EXISTING: _update_existing,
    MergeStrategy.ADD_MISSING: _add_missing,
}


def decide(strategy: MergeStrategy, exists: bool) -> StrategyDecision:
    """Return the decision of *strategy* for an object.

    Args:
        strategy: The merge strategy variant.
        exists: Whether the target platform already holds the object id.
    """
    return _STRATEGY_MAP[strategy](exists)


def parse_strategy(name: str | MergeStrategy) -> MergeStrategy:
    """Map a strategy string to its ``MergeStrategy`` variant.

    Raises:
        ValueError: If the strategy string is not recognised.
    """
    if isinstance(name, MergeStrategy):
        return name
    try:
        return MergeStrategy(name.strip().lower())
    except ValueError:
        valid = sorted(s.value for s in MergeStrategy)
        raise ValueError(
            f"Unknown merge strategy: '{name}'. Valid strategies: {valid}"
        ) from None
