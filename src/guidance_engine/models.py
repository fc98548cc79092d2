"""
Guidance Engine Models - Data classes for requests, contexts and decisions.

Everything that flows between pipeline stages is defined here. Stage inputs
and outputs are frozen: a stage that needs to adjust a value derives a new
instance with dataclasses.replace() instead of mutating the one it was given.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any


class ChangeKind(str, Enum):
    """How a file is touched by the change under review."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


class Complexity(str, Enum):
    """Estimated complexity of a request."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RiskLevel(str, Enum):
    """Bucketed risk score."""

    LOW = "low"  # below medium cutoff
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"  # human review territory


class InstructionType(str, Enum):
    """Type of a catalog instruction entry."""

    CORE = "core"  # Always included
    PERSONA = "persona"
    DOMAIN = "domain"
    RISK = "risk"


class GateState(str, Enum):
    """Lifecycle state of a request inside the workflow and risk gate."""

    DETECTED = "detected"
    VALIDATED = "validated"
    RISK_ASSESSED = "risk_assessed"
    PROCEED = "proceed"
    PROCEED_WITH_MITIGATION = "proceed_with_mitigation"
    STOP = "stop"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {GateState.PROCEED, GateState.PROCEED_WITH_MITIGATION, GateState.STOP}
)


# =============================================================================
# REQUEST
# =============================================================================


@dataclass(frozen=True)
class FileRef:
    """A file touched by the request."""

    path: str
    change_kind: ChangeKind = ChangeKind.MODIFIED
    lines_changed: int | None = None  # Diff magnitude when the caller knows it

    @classmethod
    def from_dict(cls, data: dict | str) -> "FileRef":
        """Create from a dict, or from a bare path string."""
        if isinstance(data, str):
            return cls(path=data)
        lines = data.get("lines_changed")
        return cls(
            path=str(data.get("path", "")),
            change_kind=ChangeKind(data.get("change_kind", ChangeKind.MODIFIED.value)),
            lines_changed=int(lines) if lines is not None else None,
        )

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "change_kind": self.change_kind.value,
            "lines_changed": self.lines_changed,
        }


@dataclass(frozen=True)
class WorkItemRef:
    """Linked work item (ticket, issue, story)."""

    id: str
    kind: str = "task"  # bug, story, task, incident, security, ...
    title: str = ""
    labels: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict) -> "WorkItemRef":
        return cls(
            id=str(data["id"]),
            kind=str(data.get("kind", "task")).lower(),
            title=str(data.get("title", "")),
            labels=tuple(str(label).lower() for label in data.get("labels", [])),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "title": self.title,
            "labels": list(self.labels),
        }


@dataclass(frozen=True)
class Request:
    """Incoming development request. Owned by the caller."""

    text: str = ""
    files: tuple[FileRef, ...] = ()
    work_item: WorkItemRef | None = None

    @property
    def is_empty(self) -> bool:
        """True when there is nothing to classify (no text, no files)."""
        return not (self.text or "").strip() and not self.files

    @classmethod
    def from_dict(cls, data: dict | None) -> "Request":
        """Build a request from its JSON shape.

        Missing or null fields fall back to empty values so that a malformed
        payload degrades to an empty request rather than failing.
        """
        data = data or {}
        work_item = data.get("work_item")
        return cls(
            text=data.get("text") or "",
            files=tuple(FileRef.from_dict(f) for f in data.get("files") or []),
            work_item=WorkItemRef.from_dict(work_item) if work_item else None,
        )

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "files": [f.to_dict() for f in self.files],
            "work_item": self.work_item.to_dict() if self.work_item else None,
        }


# =============================================================================
# CONTEXT
# =============================================================================


@dataclass(frozen=True)
class DomainScore:
    """Score of one domain for one request."""

    domain: str
    score: float

    def to_dict(self) -> dict:
        return {"domain": self.domain, "score": self.score}


@dataclass(frozen=True)
class Context:
    """Structured, scored view of a request produced by the detector."""

    domains: tuple[DomainScore, ...]  # Descending by score
    primary_domain: str
    persona: str
    complexity: Complexity
    risk_level: RiskLevel
    risk_score: float  # 0-10
    confidence: float  # 0-1
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def risk_factors(self) -> frozenset[str]:
        return frozenset(self.metadata.get("risk_factors", frozenset()))

    @property
    def significant_domains(self) -> tuple[str, ...]:
        """Primary domain followed by secondary domains above the significance threshold."""
        return tuple(self.metadata.get("significant_domains", (self.primary_domain,)))

    def with_persona(self, persona: str) -> "Context":
        """Derive a new context with a different persona."""
        return replace(self, persona=persona)

    def to_dict(self) -> dict:
        metadata = dict(self.metadata)
        metadata["risk_factors"] = sorted(self.risk_factors)
        if "significant_domains" in metadata:
            metadata["significant_domains"] = list(metadata["significant_domains"])
        return {
            "domains": [d.to_dict() for d in self.domains],
            "primary_domain": self.primary_domain,
            "persona": self.persona,
            "complexity": self.complexity.value,
            "risk_level": self.risk_level.value,
            "risk_score": self.risk_score,
            "confidence": self.confidence,
            "metadata": metadata,
        }


@dataclass(frozen=True)
class Recommendation:
    """Pattern recommendation derived from learning history."""

    pattern: str  # prefer-persona, low-success-history
    description: str
    domain: str
    persona: str
    success_ratio: float | None = None
    sample_size: int = 0

    def to_dict(self) -> dict:
        return {
            "pattern": self.pattern,
            "description": self.description,
            "domain": self.domain,
            "persona": self.persona,
            "success_ratio": self.success_ratio,
            "sample_size": self.sample_size,
        }


@dataclass(frozen=True)
class OptimizedContext:
    """Detector context plus learning-derived adjustments."""

    context: Context
    suggested_persona: str | None = None
    persona_confidence: float | None = None
    pattern_recommendations: tuple[Recommendation, ...] = ()

    @property
    def effective_context(self) -> Context:
        """Context to hand to later stages (suggested persona applied)."""
        if self.suggested_persona and self.suggested_persona != self.context.persona:
            return self.context.with_persona(self.suggested_persona)
        return self.context

    def to_dict(self) -> dict:
        result = self.context.to_dict()
        result["suggested_persona"] = self.suggested_persona
        result["persona_confidence"] = self.persona_confidence
        result["pattern_recommendations"] = [
            r.to_dict() for r in self.pattern_recommendations
        ]
        return result


# =============================================================================
# INSTRUCTIONS
# =============================================================================


def tag_list(value: Any) -> list[str]:
    """Normalize a tags value: a single string is one tag.

    Raises:
        TypeError: If value is neither a string nor a list of tags
    """
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise TypeError(f"tags must be a string or a list, got {type(value).__name__}")
    return [str(tag) for tag in value]


@dataclass(frozen=True)
class InstructionEntry:
    """Catalog item. The engine selects it but never interprets its content."""

    id: str
    path: str
    type: InstructionType
    tags: frozenset[str] = frozenset()
    size_cost: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "InstructionEntry":
        """Create from a catalog record.

        Raises:
            KeyError: If id is missing
            TypeError: If tags is not a string or a list
            ValueError: If type or size_cost is invalid
        """
        return cls(
            id=str(data["id"]),
            path=str(data.get("path", "")),
            type=InstructionType(str(data.get("type", "domain")).lower()),
            tags=frozenset(tag.lower() for tag in tag_list(data.get("tags"))),
            size_cost=int(data.get("size_cost", 0)),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "path": self.path,
            "type": self.type.value,
            "tags": sorted(self.tags),
            "size_cost": self.size_cost,
        }


@dataclass(frozen=True)
class InstructionSet:
    """Instructions selected for one request."""

    instructions: tuple[InstructionEntry, ...]
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def truncated(self) -> bool:
        return bool(self.metadata.get("truncated", False))

    @property
    def degraded(self) -> bool:
        return bool(self.metadata.get("degraded", False))

    @property
    def total_cost(self) -> int:
        return sum(entry.size_cost for entry in self.instructions)

    @property
    def ids(self) -> list[str]:
        return [entry.id for entry in self.instructions]

    def to_dict(self) -> dict:
        return {
            "instructions": [entry.to_dict() for entry in self.instructions],
            "metadata": dict(self.metadata),
        }


# =============================================================================
# LEARNING
# =============================================================================


@dataclass(frozen=True)
class LearningRecord:
    """Historical effectiveness of a persona within a domain."""

    domain: str
    persona: str
    success_count: int = 0
    total_count: int = 0
    last_updated: datetime | None = None

    @property
    def success_ratio(self) -> float:
        if self.total_count <= 0:
            return 0.0
        return self.success_count / self.total_count

    def incremented(self, success: bool, when: datetime) -> "LearningRecord":
        """Return the record after one more observed outcome."""
        return replace(
            self,
            success_count=self.success_count + (1 if success else 0),
            total_count=self.total_count + 1,
            last_updated=when,
        )

    @classmethod
    def from_row(cls, row) -> "LearningRecord":
        """Create from database row."""
        last_updated = row["last_updated"]
        return cls(
            domain=row["domain"],
            persona=row["persona"],
            success_count=row["success_count"],
            total_count=row["total_count"],
            last_updated=datetime.fromisoformat(last_updated) if last_updated else None,
        )

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "persona": self.persona,
            "success_count": self.success_count,
            "total_count": self.total_count,
            "success_ratio": round(self.success_ratio, 4),
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }


# =============================================================================
# DECISIONS
# =============================================================================


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of workflow validation."""

    compliant: bool
    reason: str
    violation: str | None = None  # Rule identifier when not compliant


@dataclass(frozen=True)
class Decision:
    """Terminal output of the gate."""

    proceed: bool
    reason: str
    mitigation: tuple[str, ...] | None = None
    risk_factors: tuple[str, ...] | None = None
    state: GateState = GateState.PROCEED

    def to_dict(self) -> dict:
        return {
            "proceed": self.proceed,
            "reason": self.reason,
            "mitigation": list(self.mitigation) if self.mitigation is not None else None,
            "risk_factors": list(self.risk_factors)
            if self.risk_factors is not None
            else None,
            "state": self.state.value,
        }


@dataclass(frozen=True)
class ExecutionContext:
    """Result of processing one request through the whole pipeline."""

    proceed: bool
    reason: str
    context: OptimizedContext
    instructions: tuple[str, ...]
    risk_level: RiskLevel
    risk_score: float
    mitigation: tuple[str, ...] | None = None
    risk_factors: tuple[str, ...] | None = None
    state: GateState = GateState.PROCEED
    truncated: bool = False
    degraded: bool = False
    fallback: bool = False

    def to_dict(self) -> dict:
        return {
            "proceed": self.proceed,
            "reason": self.reason,
            "context": self.context.to_dict(),
            "instructions": list(self.instructions),
            "risk_level": self.risk_level.value,
            "risk_score": self.risk_score,
            "mitigation": list(self.mitigation) if self.mitigation is not None else None,
            "risk_factors": list(self.risk_factors)
            if self.risk_factors is not None
            else None,
            "state": self.state.value,
            "truncated": self.truncated,
            "degraded": self.degraded,
            "fallback": self.fallback,
        }
