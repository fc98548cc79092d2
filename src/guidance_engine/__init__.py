"""Context-aware instruction orchestration engine."""

from guidance_engine.catalog import CatalogError, CatalogHolder, InstructionCatalog, load_catalog
from guidance_engine.config import ConfigurationError, EngineSettings, load_config
from guidance_engine.detector import ContextDetector
from guidance_engine.gate import Gate, InvalidTransitionError, RiskGate, WorkflowGate
from guidance_engine.learning import (
    InMemoryLearningStore,
    LearningEngine,
    SQLiteLearningStore,
)
from guidance_engine.models import ExecutionContext, FileRef, Request, WorkItemRef
from guidance_engine.orchestrator import InstructionOrchestrator
from guidance_engine.pipeline import GuidancePipeline, build_pipeline

__version__ = "0.1.0"

__all__ = [
    "CatalogError",
    "CatalogHolder",
    "ConfigurationError",
    "ContextDetector",
    "EngineSettings",
    "ExecutionContext",
    "FileRef",
    "Gate",
    "GuidancePipeline",
    "InMemoryLearningStore",
    "InstructionCatalog",
    "InstructionOrchestrator",
    "InvalidTransitionError",
    "LearningEngine",
    "Request",
    "RiskGate",
    "SQLiteLearningStore",
    "WorkItemRef",
    "WorkflowGate",
    "build_pipeline",
    "load_catalog",
    "load_config",
]
