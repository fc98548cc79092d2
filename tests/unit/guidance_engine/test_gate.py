"""Unit tests for the workflow and risk gate."""

import pytest

from guidance_engine.config import EngineSettings
from guidance_engine.gate import (
    Gate,
    GateLifecycle,
    InvalidTransitionError,
    RiskGate,
    WorkflowGate,
)
from guidance_engine.models import (
    Complexity,
    Context,
    DomainScore,
    GateState,
    InstructionSet,
    Request,
    RiskLevel,
    WorkItemRef,
)


def _context(
    domain: str = "documentation",
    risk_score: float = 0.0,
    confidence: float = 0.9,
    complexity: Complexity = Complexity.LOW,
    factors: frozenset = frozenset(),
) -> Context:
    return Context(
        domains=(DomainScore(domain, 2.0),),
        primary_domain=domain,
        persona="generalist",
        complexity=complexity,
        risk_level=RiskLevel.LOW,
        risk_score=risk_score,
        confidence=confidence,
        metadata={"risk_factors": factors},
    )


@pytest.fixture
def gate(settings) -> Gate:
    return Gate(settings)


class TestLifecycle:
    """Tests for gate state transitions."""

    def test_starts_detected(self):
        """New lifecycles start in DETECTED."""
        lifecycle = GateLifecycle()
        assert lifecycle.state == GateState.DETECTED
        assert lifecycle.is_terminal is False

    def test_happy_path(self):
        """DETECTED -> VALIDATED -> RISK_ASSESSED -> PROCEED."""
        lifecycle = GateLifecycle()
        for state in (GateState.VALIDATED, GateState.RISK_ASSESSED, GateState.PROCEED):
            lifecycle.advance(state)

        assert lifecycle.is_terminal is True
        assert lifecycle.history == [
            GateState.DETECTED,
            GateState.VALIDATED,
            GateState.RISK_ASSESSED,
            GateState.PROCEED,
        ]

    def test_validation_failure_stops(self):
        """DETECTED may stop directly."""
        lifecycle = GateLifecycle()
        lifecycle.advance(GateState.STOP)
        assert lifecycle.is_terminal is True

    def test_skipping_states_rejected(self):
        """States cannot be skipped."""
        lifecycle = GateLifecycle()
        with pytest.raises(InvalidTransitionError):
            lifecycle.advance(GateState.PROCEED)

    @pytest.mark.parametrize(
        "terminal", [GateState.PROCEED, GateState.PROCEED_WITH_MITIGATION, GateState.STOP]
    )
    def test_terminal_states_final(self, terminal):
        """No transition leaves a terminal state."""
        lifecycle = GateLifecycle()
        lifecycle.advance(GateState.VALIDATED)
        lifecycle.advance(GateState.RISK_ASSESSED)
        lifecycle.advance(terminal)

        for target in GateState:
            with pytest.raises(InvalidTransitionError):
                lifecycle.advance(target)


class TestWorkflowGate:
    """Tests for the traceability rule."""

    def test_traceability_domain_without_work_item(self, settings):
        """Security work without a work item is non-compliant."""
        result = WorkflowGate(settings).validate(Request(text="x"), _context("security"))

        assert result.compliant is False
        assert result.violation == "missing_work_item"
        assert "missing required linkage" in result.reason

    def test_blank_work_item_id(self, settings):
        """A work item with a blank id does not count."""
        request = Request(text="x", work_item=WorkItemRef(id="  "))
        assert WorkflowGate(settings).validate(request, _context("development")).compliant is False

    def test_linked_work_item(self, settings):
        """A linked work item satisfies the rule."""
        request = Request(text="x", work_item=WorkItemRef(id="42"))
        assert WorkflowGate(settings).validate(request, _context("security")).compliant is True

    def test_other_domains_exempt(self, settings):
        """Domains outside the traceability list need no work item."""
        assert WorkflowGate(settings).validate(Request(), _context("documentation")).compliant is True


class TestRiskGate:
    """Tests for rules 2 to 5."""

    def test_critical_stops(self, settings):
        """Critical score requires human review."""
        decision = RiskGate(settings).decide(_context(risk_score=8.0))

        assert decision.proceed is False
        assert decision.state == GateState.STOP
        assert "human review" in decision.reason

    def test_high_with_low_confidence_stops(self, settings):
        """High risk below the confidence floor stops."""
        decision = RiskGate(settings).decide(_context(risk_score=6.0, confidence=0.4))

        assert decision.proceed is False
        assert "low certainty" in decision.reason

    def test_high_with_good_confidence_proceeds(self, settings):
        """High risk at adequate confidence is not stopped by rule 3."""
        decision = RiskGate(settings).decide(_context(risk_score=6.0, confidence=0.5))
        assert decision.proceed is True

    def test_high_complexity_mitigation(self, settings):
        """High complexity at medium risk proceeds with mitigation."""
        decision = RiskGate(settings).decide(
            _context(risk_score=3.0, complexity=Complexity.HIGH)
        )

        assert decision.proceed is True
        assert decision.state == GateState.PROCEED_WITH_MITIGATION
        assert decision.mitigation == settings.gate.mitigations
        assert len(decision.mitigation) == 4

    def test_high_complexity_low_risk_proceeds(self, settings):
        """High complexity alone is not enough for mitigation."""
        decision = RiskGate(settings).decide(
            _context(risk_score=2.5, complexity=Complexity.HIGH)
        )
        assert decision.state == GateState.PROCEED
        assert decision.mitigation is None

    def test_default_proceed(self, settings):
        """No trigger proceeds."""
        decision = RiskGate(settings).decide(_context(risk_score=1.0))

        assert decision.proceed is True
        assert decision.reason == "no blocking risk triggers"
        assert decision.risk_factors is None

    def test_degraded_selection_noted(self, settings):
        """A degraded instruction set is mentioned in the reason."""
        instruction_set = InstructionSet(instructions=(), metadata={"degraded": True})
        decision = RiskGate(settings).decide(_context(), instruction_set)
        assert "exceed the size budget" in decision.reason

    def test_risk_factors_sorted(self, settings):
        """Risk factors are reported sorted."""
        decision = RiskGate(settings).decide(
            _context(risk_score=1.0, factors=frozenset({"no_tests", "deleted_files"}))
        )
        assert decision.risk_factors == ("deleted_files", "no_tests")

    def test_configured_thresholds(self):
        """Thresholds come from settings."""
        settings = EngineSettings.from_config({"gate": {"critical_threshold": 9.5}})
        assert RiskGate(settings).decide(_context(risk_score=8.0)).proceed is True


class TestGate:
    """Tests for rule order across both gates."""

    def test_missing_work_item_stops_at_zero_risk(self, gate):
        """Workflow validation stops even when there is no risk."""
        decision = gate.evaluate(Request(text="x"), _context("development", risk_score=0.0))

        assert decision.proceed is False
        assert decision.state == GateState.STOP
        assert "missing required linkage" in decision.reason
        assert "work item" in decision.reason

    def test_workflow_rule_wins_over_critical(self, gate):
        """Rule 1 is reported before the critical rule."""
        decision = gate.evaluate(Request(text="x"), _context("security", risk_score=9.0))
        assert "missing required linkage" in decision.reason

    def test_critical_after_validation(self, gate):
        """With a work item the critical rule applies."""
        request = Request(text="x", work_item=WorkItemRef(id="1"))
        decision = gate.evaluate(request, _context("security", risk_score=9.0))
        assert "human review" in decision.reason

    def test_proceed(self, gate):
        """Compliant, low-risk requests proceed."""
        decision = gate.evaluate(Request(text="x"), _context("documentation", risk_score=1.0))
        assert decision.proceed is True
        assert decision.state == GateState.PROCEED

    def test_validation_stop_keeps_factors(self, gate):
        """A workflow stop still reports the detected risk factors."""
        decision = gate.evaluate(
            Request(text="x"),
            _context("security", factors=frozenset({"security_domain", "missing_work_item"})),
        )
        assert decision.risk_factors == ("missing_work_item", "security_domain")
