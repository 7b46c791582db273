"""Phase computation and transition effects.

The current phase is never stored authoritatively. It is recomputed from
the signal set and the review verdict every time it is needed, so
external edits and crashes cannot leave it stale.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import AbstractSet, Iterable, List, Optional

from .models import Phase, ReviewVerdict
from .signals import COMPOUND, PLAN, PUBLISH, REVIEW, implementation_signals, refine_signals


class Effect(str, Enum):
    """Side effects triggered by an observed phase change."""

    COMMIT_IMPLEMENTATION = "commit_implementation"
    COMMIT_REFINEMENT = "commit_refinement"
    START_ITERATION = "start_iteration"
    ESCALATE = "escalate"


def next_phase(
    signals: AbstractSet[str],
    verdict: ReviewVerdict,
    workers: Iterable[str],
    plan_exists: bool = False,
) -> Phase:
    """Derive the current phase. First matching rule wins."""
    workers = list(workers)
    if not workers:
        raise ValueError("at least one worker role is required")

    if COMPOUND in signals and PUBLISH in signals:
        return Phase.COMPLETE
    if REVIEW in signals and verdict is ReviewVerdict.PASS:
        return Phase.COMPOUNDING
    # Refinement re-submitted: ready for re-review even though the old
    # verdict still says FAIL.
    if refine_signals(workers) <= signals:
        return Phase.REVIEWING
    if REVIEW in signals and verdict is ReviewVerdict.FAIL:
        return Phase.REFINING
    if implementation_signals(workers) <= signals:
        return Phase.REVIEWING
    if PLAN in signals:
        return Phase.IMPLEMENTING
    if plan_exists:
        return Phase.PLANNING
    return Phase.INIT


@dataclass
class Transition:
    previous: Optional[Phase]
    phase: Phase
    iteration: int
    effects: List[Effect] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.previous is not None and self.previous is not self.phase


class PhaseStateMachine:
    """Turns an observed phase change into the effects it requires."""

    def __init__(self, workers: Iterable[str], max_iterations: int = 3):
        self.workers = list(workers)
        self.max_iterations = max_iterations

    def compute(self, signals: AbstractSet[str], verdict: ReviewVerdict, plan_exists: bool = False) -> Phase:
        return next_phase(signals, verdict, self.workers, plan_exists)

    def evaluate(self, previous: Optional[Phase], current: Phase, iteration: int) -> Transition:
        """Effects for moving from ``previous`` to ``current``.

        An unknown previous phase (no cached state) produces no effects,
        so a lost cache never replays commits or iteration bumps.
        """
        transition = Transition(previous=previous, phase=current, iteration=iteration)
        if not transition.changed:
            return transition

        if previous is Phase.IMPLEMENTING and current.ordinal > Phase.IMPLEMENTING.ordinal:
            transition.effects.append(Effect.COMMIT_IMPLEMENTATION)

        if previous is Phase.REFINING and current in (Phase.REVIEWING, Phase.COMPOUNDING, Phase.COMPLETE):
            transition.effects.append(Effect.COMMIT_REFINEMENT)

        if current is Phase.REFINING:
            if iteration >= self.max_iterations:
                transition.effects.append(Effect.ESCALATE)
            else:
                transition.iteration = iteration + 1
                transition.effects.append(Effect.START_ITERATION)

        return transition

    def recover(self, current: Phase, iteration: int) -> Transition:
        """Rebuild iteration bookkeeping when the cached record is lost.

        ``iteration`` counts failed reviews including the current one, so a
        value past the limit means the refine loop was already exhausted.
        """
        transition = Transition(previous=None, phase=current, iteration=iteration)
        if current is Phase.REFINING and iteration > self.max_iterations:
            transition.iteration = self.max_iterations
            transition.effects.append(Effect.ESCALATE)
        return transition
