"""
Instruction Orchestrator - budget-constrained instruction selection.

Selection is greedy by fixed priority rather than an exact knapsack optimum,
so the same context always explains itself the same way:

1. Core entries are reserved first (never dropped, even over budget)
2. Candidates come from the catalog's tag index: persona tag, then the
   primary domain and significant secondary domains, then risk entries when
   the risk level is high or critical
3. Candidates are ordered persona > domain (by domain rank) > risk, with
   catalog order as the stable tie-break
4. Each candidate is added if it fits the remaining budget, otherwise skipped
   (never partially included) and packing continues with the next one

Complexity: O(n log n) in the number of matching candidates.
"""

import logging

from guidance_engine.catalog import InstructionCatalog
from guidance_engine.config import EngineSettings
from guidance_engine.models import (
    Context,
    InstructionEntry,
    InstructionSet,
    InstructionType,
    RiskLevel,
)

logger = logging.getLogger(__name__)

# Candidate tiers, lower sorts first
TIER_PERSONA = 0
TIER_DOMAIN = 1
TIER_RISK = 2

RISK_TAG = "risk"
TECHNIQUE_PREFIX = "technique:"
EXPERTISE_PREFIX = "expertise:"
PRIORITY_PREFIX = "priority:"

# Highest first
PRIORITY_ORDER = ("critical", "high", "medium", "low")
DEFAULT_PRIORITY = "normal"

RISK_CANDIDATE_LEVELS = frozenset({RiskLevel.HIGH, RiskLevel.CRITICAL})


class InstructionOrchestrator:
    """Selects a minimal sufficient instruction set for a context."""

    def __init__(self, settings: EngineSettings | None = None):
        self.settings = settings or EngineSettings.from_config()

    def select(
        self,
        context: Context,
        catalog: InstructionCatalog,
        budget: int | None = None,
    ) -> InstructionSet:
        """
        Select instructions for a context under a size budget.

        Args:
            context: Detected (possibly learning-adjusted) context
            catalog: Active instruction catalog
            budget: Maximum aggregate size cost (settings budget when None)

        Returns:
            InstructionSet with core entries first, then selected candidates
            in priority order. metadata.truncated is True exactly when an
            eligible candidate was skipped; metadata.degraded is True when the
            core entries alone exceed the budget.
        """
        budget = self.settings.budget if budget is None else budget

        core = list(catalog.core_entries)
        core_cost = sum(entry.size_cost for entry in core)
        degraded = core_cost > budget
        if degraded:
            logger.warning(
                f"Core instructions alone exceed budget ({core_cost} > {budget}); "
                f"keeping all {len(core)} core entries"
            )

        candidates = self._candidates(context, catalog)
        remaining = budget - core_cost
        selected: list[InstructionEntry] = []
        skipped: list[str] = []
        for entry in candidates:
            if entry.size_cost <= remaining:
                selected.append(entry)
                remaining -= entry.size_cost
            else:
                skipped.append(entry.id)

        instructions = tuple(core + selected)
        total_cost = core_cost + sum(entry.size_cost for entry in selected)

        if skipped:
            logger.debug(
                f"Skipped {len(skipped)} candidate(s) over budget: {', '.join(skipped)}"
            )

        return InstructionSet(
            instructions=instructions,
            metadata={
                "truncated": bool(skipped),
                "degraded": degraded,
                "original_count": len(core) + len(candidates),
                "skipped": skipped,
                "techniques": _tag_values(instructions, TECHNIQUE_PREFIX),
                "expertise": _tag_values(instructions, EXPERTISE_PREFIX),
                "priority": _priority(instructions),
                "total_cost": total_cost,
                "budget": budget,
            },
        )

    def core_only(self, catalog: InstructionCatalog, budget: int | None = None) -> InstructionSet:
        """Core entries with no candidates (fallback selection)."""
        budget = self.settings.budget if budget is None else budget
        core = catalog.core_entries
        total_cost = sum(entry.size_cost for entry in core)
        return InstructionSet(
            instructions=core,
            metadata={
                "truncated": False,
                "degraded": total_cost > budget,
                "original_count": len(core),
                "skipped": [],
                "techniques": _tag_values(core, TECHNIQUE_PREFIX),
                "expertise": _tag_values(core, EXPERTISE_PREFIX),
                "priority": _priority(core),
                "total_cost": total_cost,
                "budget": budget,
            },
        )

    def _candidates(
        self, context: Context, catalog: InstructionCatalog
    ) -> list[InstructionEntry]:
        """Eligible non-core entries sorted by (tier, domain rank, catalog order)."""
        keyed: dict[str, tuple[tuple[int, int, int], InstructionEntry]] = {}

        def offer(entry: InstructionEntry, tier: int, rank: int = 0) -> None:
            if entry.type == InstructionType.CORE:
                return
            key = (tier, rank, catalog.position(entry))
            current = keyed.get(entry.id)
            if current is None or key < current[0]:
                keyed[entry.id] = (key, entry)

        for entry in catalog.tagged(context.persona):
            offer(entry, TIER_PERSONA)

        for rank, domain in enumerate(context.significant_domains):
            for entry in catalog.tagged(domain):
                offer(entry, TIER_DOMAIN, rank)

        if context.risk_level in RISK_CANDIDATE_LEVELS:
            for entry in catalog.of_type(InstructionType.RISK) + catalog.tagged(RISK_TAG):
                offer(entry, TIER_RISK)

        return [entry for _, entry in sorted(keyed.values(), key=lambda item: item[0])]


def _tag_values(instructions, prefix: str) -> list[str]:
    """Values of prefixed tags in instruction order, without duplicates."""
    values: list[str] = []
    for entry in instructions:
        for tag in sorted(entry.tags):
            if tag.startswith(prefix):
                value = tag[len(prefix):]
                if value and value not in values:
                    values.append(value)
    return values


def _priority(instructions) -> str:
    declared = {
        tag[len(PRIORITY_PREFIX):]
        for entry in instructions
        for tag in entry.tags
        if tag.startswith(PRIORITY_PREFIX)
    }
    for level in PRIORITY_ORDER:
        if level in declared:
            return level
    return DEFAULT_PRIORITY
