import pytest

from maestro.machine import Effect, PhaseStateMachine, next_phase
from maestro.models import Phase, ReviewVerdict

WORKERS = ["backend", "frontend", "tests"]
PASS, FAIL, PENDING = ReviewVerdict.PASS, ReviewVerdict.FAIL, ReviewVerdict.PENDING


@pytest.mark.parametrize("signals, verdict, plan_exists, phase", [
    (set(), PENDING, False, Phase.INIT),
    (set(), PENDING, True, Phase.PLANNING),
    ({"plan"}, PENDING, True, Phase.IMPLEMENTING),
    ({"plan", "backend"}, PENDING, True, Phase.IMPLEMENTING),
    ({"plan", "backend", "frontend"}, PENDING, True, Phase.IMPLEMENTING),
    ({"plan", "backend", "frontend", "tests"}, PENDING, True, Phase.REVIEWING),
    ({"plan", "backend", "frontend", "tests", "review"}, PENDING, True, Phase.REVIEWING),
    ({"plan", "backend", "frontend", "tests", "review"}, FAIL, True, Phase.REFINING),
    ({"plan", "backend", "frontend", "tests", "review", "backend-refine"}, FAIL, True, Phase.REFINING),
    ({"plan", "backend", "frontend", "tests", "review",
      "backend-refine", "frontend-refine", "tests-refine"}, FAIL, True, Phase.REVIEWING),
    ({"plan", "backend", "frontend", "tests", "review"}, PASS, True, Phase.COMPOUNDING),
    ({"plan", "backend", "frontend", "tests", "review", "compound"}, PASS, True, Phase.COMPOUNDING),
    ({"plan", "backend", "frontend", "tests", "review", "compound", "publish"}, PASS, True, Phase.COMPLETE),
])
def test_next_phase(signals, verdict, plan_exists, phase):
    assert next_phase(signals, verdict, WORKERS, plan_exists) is phase


def test_review_signal_without_pass_is_not_compounding():
    signals = {"plan", "backend", "frontend", "tests", "review"}
    assert next_phase(signals, PENDING, WORKERS) is not Phase.COMPOUNDING


def test_complete_needs_both_compound_and_publish():
    assert next_phase({"publish"}, PASS, WORKERS) is Phase.INIT


def test_next_phase_is_deterministic():
    signals = frozenset({"plan", "backend", "frontend"})
    assert {next_phase(signals, PENDING, WORKERS) for _ in range(5)} == {Phase.IMPLEMENTING}


def test_next_phase_requires_workers():
    with pytest.raises(ValueError):
        next_phase({"plan"}, PENDING, [])


class TestTransitions:
    def setup_method(self):
        self.machine = PhaseStateMachine(WORKERS, max_iterations=2)

    def test_unknown_previous_has_no_effects(self):
        transition = self.machine.evaluate(None, Phase.REFINING, 0)
        assert transition.effects == []
        assert transition.iteration == 0
        assert not transition.changed

    def test_same_phase_has_no_effects(self):
        transition = self.machine.evaluate(Phase.REFINING, Phase.REFINING, 1)
        assert transition.effects == []
        assert transition.iteration == 1

    def test_leaving_implementing_commits(self):
        transition = self.machine.evaluate(Phase.IMPLEMENTING, Phase.REVIEWING, 0)
        assert transition.effects == [Effect.COMMIT_IMPLEMENTATION]

    def test_entering_refining_starts_iteration(self):
        transition = self.machine.evaluate(Phase.REVIEWING, Phase.REFINING, 0)
        assert transition.iteration == 1
        assert transition.effects == [Effect.START_ITERATION]

    def test_refinement_resubmitted_commits(self):
        transition = self.machine.evaluate(Phase.REFINING, Phase.REVIEWING, 1)
        assert transition.effects == [Effect.COMMIT_REFINEMENT]
        assert transition.iteration == 1

    def test_refine_limit_escalates(self):
        transition = self.machine.evaluate(Phase.REVIEWING, Phase.REFINING, 2)
        assert transition.effects == [Effect.ESCALATE]
        assert transition.iteration == 2

    def test_iteration_never_exceeds_limit(self):
        iteration = 0
        for _ in range(5):
            iteration = self.machine.evaluate(Phase.REVIEWING, Phase.REFINING, iteration).iteration
        assert iteration == 2

    def test_recover_within_limit(self):
        transition = self.machine.recover(Phase.REFINING, 2)
        assert transition.iteration == 2
        assert transition.effects == []

    def test_recover_past_limit_escalates(self):
        transition = self.machine.recover(Phase.REFINING, 3)
        assert transition.iteration == 2
        assert transition.effects == [Effect.ESCALATE]

    def test_recover_outside_refining(self):
        assert self.machine.recover(Phase.REVIEWING, 5).effects == []
