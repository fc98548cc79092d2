"""Guidance Engine Configuration

Configuration loading with environment variable support and sensible defaults.
Every numeric threshold, keyword list and lookup table the engine uses lives
here so that a deploying organisation can replace the shipped policy with its
own YAML file.

Environment Variables:
    GUIDANCE_CONFIG_PATH: Path to config file (default: guidance-config.yaml in base dir)
    GUIDANCE_CATALOG_PATH: Override catalog path from config
    GUIDANCE_LEARNING_DB: Override learning database path from config
    GUIDANCE_BUDGET: Override instruction size budget

Configuration Schema:
    detection:
        weights: keyword/file/work_item/label signal weights
        domains: per-domain keywords, file_patterns, work_item_kinds
        domain_priority: tie-break order for equal domain scores
        personas / persona_combinations: persona lookup tables
        complexity: keyword list and fixed thresholds
        confidence: floor, ambiguity_weight, compound_discount
    risk:
        factors: points per risk factor
        cutoffs: medium/high/critical score cutoffs
    gate:
        traceability_domains, thresholds, confidence_floor, mitigations
    learning:
        store: "sqlite" | "memory"
        db_path, min_samples, margin, neutral_ratio, ...
    selection:
        budget: int - Maximum aggregate size cost per request
    catalog:
        path: str - Catalog manifest (YAML) or instruction directory
    logging:
        log_level: str - Logging level (default: "INFO")
"""

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


GENERAL_DOMAIN = "general"

DEFAULT_CONFIG_FILENAME = "guidance-config.yaml"

# Default configuration values
DEFAULT_CONFIG: Dict[str, Any] = {
    "detection": {
        "weights": {
            "keyword": 1.0,
            "file": 2.0,
            "work_item": 1.5,
            "label": 0.75,
        },
        "significance_ratio": 0.5,
        "domain_priority": [
            "security",
            "infrastructure",
            "development",
            "testing",
            "documentation",
            "project_management",
        ],
        "domains": {
            "security": {
                "keywords": [
                    "security",
                    "vulnerability",
                    "injection",
                    "sql injection",
                    "xss",
                    "csrf",
                    "auth",
                    "authentication",
                    "authorization",
                    "login",
                    "password",
                    "secret",
                    "token",
                    "encrypt",
                    "encryption",
                    "cve",
                    "exploit",
                    "sanitize",
                ],
                "file_patterns": [
                    "*auth*",
                    "*login*",
                    "*security*",
                    "*crypto*",
                    "*secret*",
                    "*permission*",
                    "*.pem",
                    "*.key",
                ],
                "work_item_kinds": ["security", "vulnerability"],
            },
            "infrastructure": {
                "keywords": [
                    "deploy",
                    "deployment",
                    "docker",
                    "kubernetes",
                    "k8s",
                    "terraform",
                    "helm",
                    "infrastructure",
                    "cluster",
                    "ci",
                    "nginx",
                    "monitoring",
                ],
                "file_patterns": [
                    "dockerfile",
                    "*dockerfile*",
                    "docker-compose*.yml",
                    "*.tf",
                    "*.tfvars",
                    "k8s/*",
                    "*/k8s/*",
                    "helm/*",
                    ".github/workflows/*",
                    "deploy/*",
                    "infra/*",
                    "*/infra/*",
                ],
                "work_item_kinds": ["incident", "ops", "infrastructure"],
            },
            "development": {
                "keywords": [
                    "fix",
                    "bug",
                    "implement",
                    "feature",
                    "refactor",
                    "function",
                    "class",
                    "api",
                    "endpoint",
                    "module",
                    "code",
                ],
                "file_patterns": [
                    "*.py",
                    "*.js",
                    "*.ts",
                    "*.tsx",
                    "*.jsx",
                    "*.go",
                    "*.rs",
                    "*.java",
                    "*.rb",
                    "*.c",
                    "*.cpp",
                    "*.h",
                    "*.cs",
                    "*.kt",
                    "*.php",
                ],
                "work_item_kinds": ["bug", "story", "feature"],
            },
            "testing": {
                "keywords": [
                    "test",
                    "tests",
                    "unit test",
                    "coverage",
                    "pytest",
                    "regression",
                    "flaky",
                    "mock",
                    "fixture",
                ],
                "file_patterns": [
                    "test_*",
                    "*/test_*",
                    "*_test.*",
                    "tests/*",
                    "*/tests/*",
                    "*.spec.*",
                    "*.test.*",
                    "conftest.py",
                ],
                "work_item_kinds": ["test"],
            },
            "documentation": {
                "keywords": [
                    "docs",
                    "documentation",
                    "readme",
                    "changelog",
                    "docstring",
                    "guide",
                    "tutorial",
                    "typo",
                ],
                "file_patterns": ["*.md", "*.rst", "docs/*", "*/docs/*"],
                "work_item_kinds": ["docs", "documentation"],
            },
            "project_management": {
                "keywords": [
                    "issue",
                    "epic",
                    "milestone",
                    "sprint",
                    "roadmap",
                    "backlog",
                    "ticket",
                    "planning",
                ],
                "file_patterns": [".github/issue_template/*"],
                "work_item_kinds": ["epic", "milestone"],
            },
        },
        "personas": {
            "security": "security-reviewer",
            "infrastructure": "platform-engineer",
            "development": "software-engineer",
            "testing": "qa-engineer",
            "documentation": "technical-writer",
            "project_management": "project-coordinator",
        },
        # "<domain>+<domain>": persona for a primary domain with a significant
        # secondary one (either order), checked before the single-domain table
        "persona_combinations": {
            "development+security": "secure-developer",
            "infrastructure+security": "devsecops-engineer",
            "development+testing": "test-focused-engineer",
        },
        "default_persona": "generalist",
        "complexity": {
            "keywords": [
                "refactor",
                "migration",
                "migrate",
                "architecture",
                "redesign",
                "concurrency",
                "race condition",
                "distributed",
                "performance",
                "rewrite",
                "schema",
                "async",
                "breaking change",
            ],
            "files_medium": 3,
            "files_high": 10,
            "lines_medium": 100,
            "lines_high": 500,
            "density_medium": 0.05,
            "density_high": 0.15,
            "points_medium": 2,
            "points_high": 4,
        },
        "confidence": {
            "floor": 0.2,
            "ambiguity_weight": 0.5,
            "compound_discount": 0.8,
        },
    },
    "risk": {
        "factors": {
            "production_files": 3.0,
            "infrastructure_files": 2.0,
            "security_domain": 2.5,
            "no_tests": 1.5,
            "missing_work_item": 1.0,
            "deleted_files": 1.0,
            "high_complexity": 1.5,
            "risky_keywords": 1.5,
            "large_change": 1.0,
        },
        "production_patterns": [
            "*production*",
            "prod/*",
            "*/prod/*",
            "*prod.*",
            "*/migrations/*",
            "migrations/*",
            "*.sql",
        ],
        "infrastructure_patterns": [
            "dockerfile",
            "*dockerfile*",
            "*.tf",
            "*.tfvars",
            "k8s/*",
            "*/k8s/*",
            "helm/*",
            ".github/workflows/*",
            "deploy/*",
            "infra/*",
            "*/infra/*",
        ],
        "test_patterns": [
            "test_*",
            "*/test_*",
            "*_test.*",
            "tests/*",
            "*/tests/*",
            "*.spec.*",
            "*.test.*",
            "conftest.py",
        ],
        "source_patterns": [
            "*.py",
            "*.js",
            "*.ts",
            "*.tsx",
            "*.jsx",
            "*.go",
            "*.rs",
            "*.java",
            "*.rb",
            "*.c",
            "*.cpp",
            "*.cs",
            "*.kt",
            "*.php",
        ],
        # Significant presence of these domains adds the security_domain factor
        "sensitive_domains": ["security"],
        "risky_keywords": [
            "production",
            "hotfix",
            "migration",
            "drop table",
            "credentials",
            "rollback",
            "force push",
            "data loss",
            "outage",
        ],
        "cutoffs": {
            "medium": 3.0,
            "high": 6.0,
            "critical": 8.0,
        },
    },
    "gate": {
        "traceability_domains": ["development", "security", "infrastructure"],
        "critical_threshold": 8.0,
        "high_threshold": 6.0,
        "medium_threshold": 3.0,
        "confidence_floor": 0.5,
        "mitigations": [
            "Split the change into smaller, independently reviewable units",
            "Add or update automated tests covering the changed behaviour",
            "Request review from a domain owner before merging",
            "Prepare and document a rollback plan",
        ],
    },
    "learning": {
        "store": "sqlite",
        "db_path": None,  # Use default (~/.guidance/learning.db)
        "min_samples": 5,
        "margin": 0.15,
        "neutral_ratio": 0.5,
        "low_success_ratio": 0.4,
        "max_retries": 3,
        "retry_base_delay": 0.05,
    },
    "selection": {
        "budget": 4000,
    },
    "catalog": {
        "path": None,  # No catalog: core-free empty selection
    },
    "logging": {
        "log_level": "INFO",
    },
}


# Policy tables a user config replaces as a whole instead of merging into
REPLACED_KEYS = frozenset({
    "detection.domains",
    "detection.personas",
    "detection.persona_combinations",
})


def _deep_merge(
    base: Dict[str, Any], override: Dict[str, Any], path: str = ""
) -> Dict[str, Any]:
    """
    Deep merge override dict into base dict.

    Keys listed in REPLACED_KEYS are taken from override as a whole. When
    detection.domains is replaced without a domain_priority, the inherited
    priority keeps only the domains that are still configured.

    Args:
        base: Base dictionary (defaults)
        override: Override dictionary (user config)
        path: Dotted location of base within the full configuration

    Returns:
        Merged dictionary with override values taking precedence
    """
    result = base.copy()
    for key, value in override.items():
        key_path = f"{path}.{key}" if path else key
        if key_path in REPLACED_KEYS:
            result[key] = value
        elif key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value, key_path)
        else:
            result[key] = value

    if (
        path == "detection"
        and isinstance(override.get("domains"), dict)
        and "domain_priority" not in override
    ):
        result["domain_priority"] = [
            d for d in result.get("domain_priority", []) if d in override["domains"]
        ]
    return result


def _resolve_path(path: Optional[str], base_dir: Path) -> Optional[Path]:
    """
    Resolve a path, making relative paths absolute from base_dir.

    Args:
        path: Path string (absolute or relative) or None
        base_dir: Base directory for relative path resolution

    Returns:
        Resolved absolute Path or None if path was None
    """
    if path is None:
        return None

    path_obj = Path(path).expanduser()
    if path_obj.is_absolute():
        return path_obj
    return (base_dir / path_obj).resolve()


def _read_yaml(path: Path) -> Dict[str, Any]:
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise yaml.YAMLError(f"top level of {path} must be a mapping")
    return data


def load_config(
    config_path: Optional[str] = None,
    base_dir: Optional[Path] = None
) -> Dict[str, Any]:
    """
    Load configuration from YAML file with environment variable overrides.

    Configuration Loading Order (later overrides earlier):
    1. Default values (DEFAULT_CONFIG)
    2. Config file (from config_path parameter or GUIDANCE_CONFIG_PATH)
    3. Environment variable overrides (GUIDANCE_CATALOG_PATH, ...)

    Args:
        config_path: Explicit config file path (overrides GUIDANCE_CONFIG_PATH)
        base_dir: Directory for relative path resolution (default: cwd)

    Returns:
        Merged configuration dictionary

    Raises:
        ConfigurationError: If an explicit config file is invalid YAML
    """
    if base_dir is None:
        base_dir = Path.cwd()

    config = copy.deepcopy(DEFAULT_CONFIG)

    file_path = config_path or os.environ.get("GUIDANCE_CONFIG_PATH")

    if file_path:
        # Explicit config path - must be valid if it exists
        resolved_path = _resolve_path(file_path, base_dir)
        if resolved_path and resolved_path.exists():
            try:
                config = _deep_merge(config, _read_yaml(resolved_path))
                logger.info(f"Loaded configuration from: {resolved_path}")
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in config file: {e}")
            except IOError as e:
                raise ConfigurationError(f"Cannot read config file: {e}")
        else:
            logger.warning(f"Config file not found (using defaults): {file_path}")
    else:
        default_config_path = base_dir / DEFAULT_CONFIG_FILENAME
        if default_config_path.exists():
            try:
                config = _deep_merge(config, _read_yaml(default_config_path))
                logger.info(f"Loaded configuration from: {default_config_path}")
            except yaml.YAMLError as e:
                logger.warning(f"Invalid YAML in default config (ignoring): {e}")
            except IOError as e:
                logger.warning(f"Cannot read default config (ignoring): {e}")
        else:
            logger.debug("No config file found, using defaults")

    catalog_override = os.environ.get("GUIDANCE_CATALOG_PATH")
    if catalog_override:
        config.setdefault("catalog", {})["path"] = catalog_override
        logger.info(f"Catalog path override from env: {catalog_override}")

    db_override = os.environ.get("GUIDANCE_LEARNING_DB")
    if db_override:
        config.setdefault("learning", {})["db_path"] = db_override
        logger.info(f"Learning database override from env: {db_override}")

    budget_override = os.environ.get("GUIDANCE_BUDGET")
    if budget_override:
        try:
            config.setdefault("selection", {})["budget"] = int(budget_override)
        except ValueError:
            raise ConfigurationError(
                f"GUIDANCE_BUDGET must be an integer, got: {budget_override!r}"
            )

    for section in ("catalog", "learning"):
        key = "path" if section == "catalog" else "db_path"
        value = config.get(section, {}).get(key)
        if value:
            resolved = _resolve_path(value, base_dir)
            config[section][key] = str(resolved) if resolved else None

    return config


def get_catalog_path(config: Dict[str, Any]) -> Optional[Path]:
    """Get catalog path from config, or None when no catalog is configured."""
    path_str = config.get("catalog", {}).get("path")
    return Path(path_str) if path_str else None


def get_learning_db_path(config: Dict[str, Any]) -> Optional[Path]:
    """Get learning database path from config (None means the default location)."""
    path_str = config.get("learning", {}).get("db_path")
    return Path(path_str) if path_str else None


# =============================================================================
# TYPED SETTINGS
# =============================================================================


@dataclass(frozen=True)
class DomainRule:
    """Signals that score one domain."""

    name: str
    keywords: tuple[str, ...] = ()
    file_patterns: tuple[str, ...] = ()
    work_item_kinds: tuple[str, ...] = ()


@dataclass(frozen=True)
class ComplexitySettings:
    keywords: tuple[str, ...]
    files_medium: int
    files_high: int
    lines_medium: int
    lines_high: int
    density_medium: float
    density_high: float
    points_medium: int
    points_high: int


@dataclass(frozen=True)
class DetectionSettings:
    domains: tuple[DomainRule, ...]
    domain_priority: tuple[str, ...]
    keyword_weight: float
    file_weight: float
    work_item_weight: float
    label_weight: float
    significance_ratio: float
    personas: Dict[str, str]
    persona_combinations: Dict[str, str]
    default_persona: str
    complexity: ComplexitySettings
    confidence_floor: float
    ambiguity_weight: float
    compound_discount: float

    def priority_of(self, domain: str) -> int:
        """Position of a domain in the tie-break order (unknown domains last)."""
        try:
            return self.domain_priority.index(domain)
        except ValueError:
            return len(self.domain_priority)


@dataclass(frozen=True)
class RiskSettings:
    factors: Dict[str, float]
    production_patterns: tuple[str, ...]
    infrastructure_patterns: tuple[str, ...]
    test_patterns: tuple[str, ...]
    source_patterns: tuple[str, ...]
    sensitive_domains: frozenset[str]
    risky_keywords: tuple[str, ...]
    medium_cutoff: float
    high_cutoff: float
    critical_cutoff: float


@dataclass(frozen=True)
class GateSettings:
    traceability_domains: frozenset[str]
    critical_threshold: float
    high_threshold: float
    medium_threshold: float
    confidence_floor: float
    mitigations: tuple[str, ...]


@dataclass(frozen=True)
class LearningSettings:
    store: str
    min_samples: int
    margin: float
    neutral_ratio: float
    low_success_ratio: float
    max_retries: int
    retry_base_delay: float


@dataclass(frozen=True)
class EngineSettings:
    """Typed, validated view of the configuration consumed by the pipeline."""

    detection: DetectionSettings
    risk: RiskSettings
    gate: GateSettings
    learning: LearningSettings
    budget: int
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> "EngineSettings":
        """
        Build settings from a configuration dictionary.

        Args:
            config: Dictionary from load_config(); defaults when None

        Raises:
            ConfigurationError: If the configuration is inconsistent
        """
        merged = _deep_merge(copy.deepcopy(DEFAULT_CONFIG), config or {})
        try:
            return cls(
                detection=_detection_settings(merged["detection"]),
                risk=_risk_settings(merged["risk"]),
                gate=_gate_settings(merged["gate"]),
                learning=_learning_settings(merged["learning"]),
                budget=_budget(merged["selection"]),
                raw=merged,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid engine configuration: {e}")


def _lower_tuple(values) -> tuple[str, ...]:
    return tuple(str(v).lower() for v in (values or []))


def _detection_settings(section: Dict[str, Any]) -> DetectionSettings:
    domains = tuple(
        DomainRule(
            name=name,
            keywords=_lower_tuple(rule.get("keywords")),
            file_patterns=_lower_tuple(rule.get("file_patterns")),
            work_item_kinds=_lower_tuple(rule.get("work_item_kinds")),
        )
        for name, rule in sorted(section["domains"].items())
    )
    known = {rule.name for rule in domains}
    if GENERAL_DOMAIN in known:
        raise ConfigurationError(
            f"'{GENERAL_DOMAIN}' is the fallback domain and cannot be configured"
        )

    priority = [str(d) for d in section.get("domain_priority", [])]
    unknown = [d for d in priority if d not in known]
    if unknown:
        raise ConfigurationError(
            f"domain_priority lists unknown domains: {unknown}. "
            f"Configured domains: {sorted(known)}"
        )
    # Domains missing from the priority list tie-break alphabetically after it
    priority += sorted(known - set(priority))

    weights = section["weights"]
    complexity = section["complexity"]
    confidence = section["confidence"]
    floor = float(confidence["floor"])
    if not 0.0 <= floor < 1.0:
        raise ConfigurationError(f"confidence floor must be in [0, 1), got {floor}")

    return DetectionSettings(
        domains=domains,
        domain_priority=tuple(priority),
        keyword_weight=float(weights["keyword"]),
        file_weight=float(weights["file"]),
        work_item_weight=float(weights["work_item"]),
        label_weight=float(weights.get("label", 0.0)),
        significance_ratio=float(section["significance_ratio"]),
        personas=dict(section.get("personas", {})),
        persona_combinations=dict(section.get("persona_combinations", {})),
        default_persona=str(section.get("default_persona", "generalist")),
        complexity=ComplexitySettings(
            keywords=_lower_tuple(complexity.get("keywords")),
            files_medium=int(complexity["files_medium"]),
            files_high=int(complexity["files_high"]),
            lines_medium=int(complexity["lines_medium"]),
            lines_high=int(complexity["lines_high"]),
            density_medium=float(complexity["density_medium"]),
            density_high=float(complexity["density_high"]),
            points_medium=int(complexity["points_medium"]),
            points_high=int(complexity["points_high"]),
        ),
        confidence_floor=floor,
        ambiguity_weight=float(confidence["ambiguity_weight"]),
        compound_discount=float(confidence["compound_discount"]),
    )


def _risk_settings(section: Dict[str, Any]) -> RiskSettings:
    cutoffs = section["cutoffs"]
    medium, high, critical = (
        float(cutoffs["medium"]),
        float(cutoffs["high"]),
        float(cutoffs["critical"]),
    )
    if not 0.0 < medium < high < critical <= 10.0:
        raise ConfigurationError(
            f"risk cutoffs must satisfy 0 < medium < high < critical <= 10, "
            f"got {medium}/{high}/{critical}"
        )
    return RiskSettings(
        factors={name: float(points) for name, points in section["factors"].items()},
        production_patterns=_lower_tuple(section.get("production_patterns")),
        infrastructure_patterns=_lower_tuple(section.get("infrastructure_patterns")),
        test_patterns=_lower_tuple(section.get("test_patterns")),
        source_patterns=_lower_tuple(section.get("source_patterns")),
        sensitive_domains=frozenset(section.get("sensitive_domains", [])),
        risky_keywords=_lower_tuple(section.get("risky_keywords")),
        medium_cutoff=medium,
        high_cutoff=high,
        critical_cutoff=critical,
    )


def _gate_settings(section: Dict[str, Any]) -> GateSettings:
    return GateSettings(
        traceability_domains=frozenset(section.get("traceability_domains", [])),
        critical_threshold=float(section["critical_threshold"]),
        high_threshold=float(section["high_threshold"]),
        medium_threshold=float(section["medium_threshold"]),
        confidence_floor=float(section["confidence_floor"]),
        mitigations=tuple(str(m) for m in section.get("mitigations", [])),
    )


def _learning_settings(section: Dict[str, Any]) -> LearningSettings:
    store = str(section.get("store", "sqlite")).lower()
    if store not in ("sqlite", "memory"):
        raise ConfigurationError(f"Unknown learning store: '{store}'")
    return LearningSettings(
        store=store,
        min_samples=int(section["min_samples"]),
        margin=float(section["margin"]),
        neutral_ratio=float(section["neutral_ratio"]),
        low_success_ratio=float(section["low_success_ratio"]),
        max_retries=max(1, int(section["max_retries"])),
        retry_base_delay=float(section["retry_base_delay"]),
    )


def _budget(section: Dict[str, Any]) -> int:
    budget = int(section["budget"])
    if budget <= 0:
        raise ConfigurationError(f"selection budget must be positive, got {budget}")
    return budget
