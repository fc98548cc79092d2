"""
Workflow & Risk Gate - final proceed / mitigate / stop decision.

Rules are evaluated in a fixed order and the first match wins:

1. Traceability domain without a linked work item -> Stop
2. Risk score >= critical threshold -> Stop (human review)
3. Risk score >= high threshold with confidence below the floor -> Stop
4. High complexity with risk score >= medium threshold -> Proceed with mitigation
5. Otherwise -> Proceed

Rule 1 is workflow validation and runs before any risk rule, so a missing
work item stops a request even when its risk score is zero.

Lifecycle:
    DETECTED -> VALIDATED -> RISK_ASSESSED -> PROCEED | PROCEED_WITH_MITIGATION | STOP
    DETECTED -> STOP (validation failed)
"""

import logging

from guidance_engine.config import EngineSettings
from guidance_engine.models import (
    Complexity,
    Context,
    Decision,
    GateState,
    InstructionSet,
    Request,
    ValidationResult,
)

logger = logging.getLogger(__name__)

VIOLATION_MISSING_WORK_ITEM = "missing_work_item"

ALLOWED_TRANSITIONS: dict[GateState, frozenset[GateState]] = {
    GateState.DETECTED: frozenset({GateState.VALIDATED, GateState.STOP}),
    GateState.VALIDATED: frozenset({GateState.RISK_ASSESSED}),
    GateState.RISK_ASSESSED: frozenset(
        {GateState.PROCEED, GateState.PROCEED_WITH_MITIGATION, GateState.STOP}
    ),
    GateState.PROCEED: frozenset(),
    GateState.PROCEED_WITH_MITIGATION: frozenset(),
    GateState.STOP: frozenset(),
}


class InvalidTransitionError(Exception):
    """Raised when a gate lifecycle is moved along a transition that does not exist."""
    pass


class GateLifecycle:
    """Tracks one request through the gate states."""

    def __init__(self):
        self.state = GateState.DETECTED
        self.history: list[GateState] = [GateState.DETECTED]

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def advance(self, target: GateState) -> GateState:
        """
        Move to target state.

        Raises:
            InvalidTransitionError: If target is not reachable from the current state
        """
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Cannot move from {self.state.value} to {target.value}"
            )
        self.state = target
        self.history.append(target)
        return target


class WorkflowGate:
    """Workflow policy checks (rule 1)."""

    def __init__(self, settings: EngineSettings | None = None):
        self.settings = settings or EngineSettings.from_config()

    def validate(self, request: Request, context: Context) -> ValidationResult:
        domain = context.primary_domain
        if domain in self.settings.gate.traceability_domains:
            work_item = request.work_item
            if work_item is None or not str(work_item.id).strip():
                return ValidationResult(
                    compliant=False,
                    reason=(
                        f"missing required linkage: '{domain}' work requires a "
                        f"linked work item and no work item was provided"
                    ),
                    violation=VIOLATION_MISSING_WORK_ITEM,
                )
        return ValidationResult(compliant=True, reason="workflow requirements satisfied")


class RiskGate:
    """Risk threshold policy (rules 2-5)."""

    def __init__(self, settings: EngineSettings | None = None):
        self.settings = settings or EngineSettings.from_config()

    def decide(
        self, context: Context, instruction_set: InstructionSet | None = None
    ) -> Decision:
        gate = self.settings.gate
        score = context.risk_score
        factors = tuple(sorted(context.risk_factors)) or None

        if score >= gate.critical_threshold:
            return Decision(
                proceed=False,
                reason=(
                    f"requires human review: risk score {score} is at or above "
                    f"the critical threshold {gate.critical_threshold}"
                ),
                risk_factors=factors,
                state=GateState.STOP,
            )

        if score >= gate.high_threshold and context.confidence < gate.confidence_floor:
            return Decision(
                proceed=False,
                reason=(
                    f"high risk with low certainty: risk score {score} with "
                    f"confidence {context.confidence} below {gate.confidence_floor}"
                ),
                risk_factors=factors,
                state=GateState.STOP,
            )

        if context.complexity == Complexity.HIGH and score >= gate.medium_threshold:
            return Decision(
                proceed=True,
                reason=(
                    f"high complexity at risk score {score}: proceed with mitigation"
                ),
                mitigation=gate.mitigations,
                risk_factors=factors,
                state=GateState.PROCEED_WITH_MITIGATION,
            )

        reason = "no blocking risk triggers"
        if instruction_set is not None and instruction_set.degraded:
            reason += " (core instructions exceed the size budget)"
        return Decision(
            proceed=True, reason=reason, risk_factors=factors, state=GateState.PROCEED
        )


class Gate:
    """Workflow validation followed by the risk decision, tracked by a lifecycle."""

    def __init__(self, settings: EngineSettings | None = None):
        self.settings = settings or EngineSettings.from_config()
        self.workflow = WorkflowGate(self.settings)
        self.risk = RiskGate(self.settings)

    def evaluate(
        self,
        request: Request,
        context: Context,
        instruction_set: InstructionSet | None = None,
    ) -> Decision:
        lifecycle = GateLifecycle()

        validation = self.workflow.validate(request, context)
        if not validation.compliant:
            lifecycle.advance(GateState.STOP)
            logger.info(f"Gate stop ({validation.violation}): {validation.reason}")
            return Decision(
                proceed=False,
                reason=validation.reason,
                risk_factors=tuple(sorted(context.risk_factors)) or None,
                state=GateState.STOP,
            )
        lifecycle.advance(GateState.VALIDATED)

        decision = self.risk.decide(context, instruction_set)
        lifecycle.advance(GateState.RISK_ASSESSED)
        lifecycle.advance(decision.state)

        if not decision.proceed:
            logger.info(f"Gate stop: {decision.reason}")
        else:
            logger.debug(f"Gate {decision.state.value}: {decision.reason}")
        return decision
