"""
Guidance Pipeline - one request in, one execution context out.

    Request -> detect -> optimize -> select -> validate -> decide -> ExecutionContext

Stages share no hidden state; each receives the previous stage's output.
The learning store is the only state that outlives a request, and the active
catalog is read once per request so a concurrent reload cannot change it
midway.

Any unexpected fault inside a stage produces the fixed fallback result
(core instructions only, medium risk, proceed, fallback=True) instead of an
exception.
"""

import logging
from pathlib import Path
from typing import Any

from guidance_engine.catalog import CatalogHolder, InstructionCatalog, load_catalog
from guidance_engine.config import (
    GENERAL_DOMAIN,
    EngineSettings,
    get_catalog_path,
    get_learning_db_path,
    load_config,
)
from guidance_engine.detector import ContextDetector
from guidance_engine.gate import Gate
from guidance_engine.learning import LearningEngine, create_learning_store
from guidance_engine.models import (
    Complexity,
    Context,
    DomainScore,
    ExecutionContext,
    GateState,
    OptimizedContext,
    Request,
    RiskLevel,
)
from guidance_engine.orchestrator import InstructionOrchestrator

logger = logging.getLogger(__name__)

FALLBACK_REASON = "fallback: internal fault, proceeding with core instructions only"


class GuidancePipeline:
    """Runs requests through detection, learning, selection and the gate."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        catalog: InstructionCatalog | CatalogHolder | None = None,
        learning: LearningEngine | None = None,
        budget: int | None = None,
    ):
        """
        Args:
            settings: Engine settings (defaults when None)
            catalog: Active catalog, or a holder shared with a watcher
            learning: Learning engine; without one contexts pass through unchanged
            budget: Size budget override (settings budget when None)
        """
        self.settings = settings or EngineSettings.from_config()
        if isinstance(catalog, CatalogHolder):
            self.catalog_holder = catalog
        else:
            self.catalog_holder = CatalogHolder(catalog)
        self.learning = learning
        self.budget = budget if budget is not None else self.settings.budget

        self.detector = ContextDetector(self.settings)
        self.orchestrator = InstructionOrchestrator(self.settings)
        self.gate = Gate(self.settings)

    @property
    def catalog(self) -> InstructionCatalog:
        return self.catalog_holder.current

    def process(self, request: Request | dict | None) -> ExecutionContext:
        """
        Process one request.

        Args:
            request: Request, its JSON-shaped dict, or None (treated as empty)

        Returns:
            ExecutionContext; never raises
        """
        catalog = self.catalog_holder.current
        try:
            return self._process(_coerce_request(request), catalog)
        except Exception as e:
            logger.error(f"Pipeline fault, returning fallback result: {e}", exc_info=True)
            return self._fallback(catalog)

    def _process(self, request: Request, catalog: InstructionCatalog) -> ExecutionContext:
        context = self.detector.detect(request)

        if self.learning is not None:
            optimized = self.learning.optimize(context)
        else:
            optimized = OptimizedContext(context=context)
        effective = optimized.effective_context

        instruction_set = self.orchestrator.select(effective, catalog, self.budget)
        decision = self.gate.evaluate(request, effective, instruction_set)

        logger.info(
            f"Processed request: domain={effective.primary_domain} "
            f"persona={effective.persona} risk={effective.risk_level.value} "
            f"({effective.risk_score}) instructions={len(instruction_set.instructions)} "
            f"state={decision.state.value}"
        )

        return ExecutionContext(
            proceed=decision.proceed,
            reason=decision.reason,
            context=optimized,
            instructions=tuple(instruction_set.ids),
            risk_level=effective.risk_level,
            risk_score=effective.risk_score,
            mitigation=decision.mitigation,
            risk_factors=decision.risk_factors,
            state=decision.state,
            truncated=instruction_set.truncated,
            degraded=instruction_set.degraded,
        )

    def _fallback(self, catalog: InstructionCatalog) -> ExecutionContext:
        """Fixed result used when a stage fails unexpectedly."""
        detection = self.settings.detection
        risk_score = self.settings.gate.medium_threshold
        context = Context(
            domains=(DomainScore(GENERAL_DOMAIN, 0.0),),
            primary_domain=GENERAL_DOMAIN,
            persona=detection.default_persona,
            complexity=Complexity.LOW,
            risk_level=RiskLevel.MEDIUM,
            risk_score=risk_score,
            confidence=detection.confidence_floor,
            metadata={"risk_factors": frozenset(), "fallback": True},
        )
        core = catalog.core_entries
        return ExecutionContext(
            proceed=True,
            reason=FALLBACK_REASON,
            context=OptimizedContext(context=context),
            instructions=tuple(entry.id for entry in core),
            risk_level=RiskLevel.MEDIUM,
            risk_score=risk_score,
            state=GateState.PROCEED,
            degraded=sum(entry.size_cost for entry in core) > self.budget,
            fallback=True,
        )

    def reload(self, catalog: InstructionCatalog) -> dict:
        """Swap the active catalog; in-flight requests keep the old one."""
        return self.catalog_holder.reload(catalog)

    def record_outcome(self, domain: str, persona: str, success: bool) -> bool:
        """
        Feed an outcome to the learning engine.

        Returns:
            False when no learning engine is configured
        """
        if self.learning is None:
            logger.warning("No learning engine configured; outcome ignored")
            return False
        self.learning.record_outcome(domain, persona, success)
        return True


def _coerce_request(request: Request | dict | None) -> Request:
    """Turn caller input into a Request; malformed input becomes an empty one."""
    if isinstance(request, Request):
        return request
    if request is None:
        return Request()
    try:
        return Request.from_dict(request)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        logger.warning(f"Malformed request treated as empty: {e}")
        return Request()


def build_pipeline(
    config: dict[str, Any] | None = None, db_path: Path | str | None = None
) -> GuidancePipeline:
    """
    Build a pipeline from configuration.

    Args:
        config: Dictionary from load_config(); loaded from disk when None
        db_path: Learning database override (config value when None)

    Raises:
        ConfigurationError: If the configuration is invalid
        CatalogError: If a configured catalog source cannot be read
    """
    if config is None:
        config = load_config()
    settings = EngineSettings.from_config(config)

    catalog_path = get_catalog_path(config)
    if catalog_path is not None:
        catalog = load_catalog(catalog_path)
    else:
        logger.warning("No catalog configured; selections will be empty")
        catalog = InstructionCatalog()

    store = create_learning_store(settings, db_path or get_learning_db_path(config))
    return GuidancePipeline(
        settings=settings,
        catalog=CatalogHolder(catalog),
        learning=LearningEngine(store, settings),
    )
