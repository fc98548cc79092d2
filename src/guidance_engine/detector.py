"""
Context Detector - deterministic multi-signal request classification.

Converts a raw request (free text, changed files, optional work item) into a
scored Context. Every step is a pure function of the request and the engine
settings: identical requests always produce identical contexts, and nothing
here is generative or sampled.

Signals:
- Keyword hits in the request text (word-boundary matches, distinct keywords)
- File path pattern matches (fnmatch against full path and basename)
- Work item kind and labels

Derived values:
- Persona from a fixed lookup over (primary, significant secondary) domains
- Complexity from file count, diff magnitude and complexity-keyword density
- Risk score as a clamped sum of fixed factor points
- Confidence from the gap between the top two domain scores
"""

import logging
import math
import re
from fnmatch import fnmatchcase
from re import Pattern

from guidance_engine.config import GENERAL_DOMAIN, EngineSettings
from guidance_engine.models import (
    ChangeKind,
    Complexity,
    Context,
    DomainScore,
    FileRef,
    Request,
    RiskLevel,
    WorkItemRef,
)

logger = logging.getLogger(__name__)

MAX_RISK_SCORE = 10.0

WORD_PATTERN = re.compile(r"\b\w+\b")


def _compile_keywords(keywords: tuple[str, ...]) -> list[tuple[str, Pattern]]:
    """Compile one word-boundary pattern per keyword (multi-word keywords allowed)."""
    return [
        (keyword, re.compile(rf"\b{re.escape(keyword)}\b", re.IGNORECASE))
        for keyword in keywords
    ]


def _matched_keywords(text: str, patterns: list[tuple[str, Pattern]]) -> list[str]:
    return [keyword for keyword, pattern in patterns if pattern.search(text)]


def _normalize_path(path: str) -> str:
    return path.replace("\\", "/").lower()


def _path_matches(path: str, patterns: tuple[str, ...]) -> bool:
    """Match a normalized path against glob patterns (full path or basename)."""
    basename = path.rsplit("/", 1)[-1]
    return any(
        fnmatchcase(path, pattern) or fnmatchcase(basename, pattern)
        for pattern in patterns
    )


class ContextDetector:
    """
    Deterministic request classifier.

    Thread-safe: holds only settings and compiled patterns after construction.
    """

    def __init__(self, settings: EngineSettings | None = None):
        self.settings = settings or EngineSettings.from_config()
        detection = self.settings.detection
        self._domain_keywords = {
            rule.name: _compile_keywords(rule.keywords) for rule in detection.domains
        }
        self._complexity_keywords = _compile_keywords(detection.complexity.keywords)
        self._risky_keywords = _compile_keywords(self.settings.risk.risky_keywords)

    def detect(self, request: Request) -> Context:
        """
        Classify a request.

        Never raises for malformed input: a request without text and files (or
        one whose fields are unusable) yields the default low-confidence
        context with primary domain "general".
        """
        if request is None:
            return self.default_context()
        try:
            if request.is_empty:
                return self.default_context()
            return self._detect(request)
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Malformed request, using default context: {e}")
            return self.default_context()

    def default_context(self) -> Context:
        """Context used when there is nothing to classify."""
        detection = self.settings.detection
        return Context(
            domains=(DomainScore(GENERAL_DOMAIN, 0.0),),
            primary_domain=GENERAL_DOMAIN,
            persona=detection.personas.get(GENERAL_DOMAIN, detection.default_persona),
            complexity=Complexity.LOW,
            risk_level=RiskLevel.LOW,
            risk_score=0.0,
            confidence=detection.confidence_floor,
            metadata={
                "risk_factors": frozenset(),
                "significant_domains": (GENERAL_DOMAIN,),
                "keyword_hits": {},
                "file_count": 0,
                "lines_changed": 0,
                "complexity_points": 0,
                "degraded_input": True,
            },
        )

    def _detect(self, request: Request) -> Context:
        text = request.text or ""
        paths = [_normalize_path(f.path) for f in request.files]

        scores, keyword_hits = self._score_domains(text, paths, request.work_item)
        domains = self._rank(scores)
        primary = domains[0].domain
        significant = self._significant_domains(domains)
        persona = self._infer_persona(primary, significant)

        complexity, complexity_points, lines_changed = self._estimate_complexity(
            text, request.files
        )
        risk_factors = self._risk_factors(
            request, paths, primary, significant, complexity, lines_changed
        )
        risk_score = self._risk_score(risk_factors)
        risk_level = self._risk_level(risk_score)
        confidence = self._confidence(domains, complexity, risk_level)

        logger.debug(
            f"Detected primary={primary} persona={persona} complexity={complexity.value} "
            f"risk={risk_score} ({risk_level.value}) confidence={confidence}"
        )

        return Context(
            domains=domains,
            primary_domain=primary,
            persona=persona,
            complexity=complexity,
            risk_level=risk_level,
            risk_score=risk_score,
            confidence=confidence,
            metadata={
                "risk_factors": frozenset(risk_factors),
                "significant_domains": significant,
                "keyword_hits": keyword_hits,
                "file_count": len(request.files),
                "lines_changed": lines_changed,
                "complexity_points": complexity_points,
                "degraded_input": False,
            },
        )

    # =========================================================================
    # DOMAIN SCORING
    # =========================================================================

    def _score_domains(
        self, text: str, paths: list[str], work_item: WorkItemRef | None
    ) -> tuple[dict[str, float], dict[str, list[str]]]:
        """Weighted sum of keyword, file and work item signals per domain."""
        detection = self.settings.detection
        scores: dict[str, float] = {}
        keyword_hits: dict[str, list[str]] = {}

        for rule in detection.domains:
            hits = _matched_keywords(text, self._domain_keywords[rule.name])
            file_matches = sum(
                1 for path in paths if _path_matches(path, rule.file_patterns)
            )
            work_item_score = 0.0
            if work_item is not None:
                if work_item.kind.lower() in rule.work_item_kinds:
                    work_item_score += detection.work_item_weight
                label_matches = sum(
                    1
                    for label in work_item.labels
                    if label == rule.name or label in rule.keywords
                )
                work_item_score += label_matches * detection.label_weight

            score = (
                len(hits) * detection.keyword_weight
                + file_matches * detection.file_weight
                + work_item_score
            )
            scores[rule.name] = round(max(score, 0.0), 6)
            if hits:
                keyword_hits[rule.name] = hits

        return scores, keyword_hits

    def _rank(self, scores: dict[str, float]) -> tuple[DomainScore, ...]:
        """Positive domains by score descending, ties by domain priority."""
        detection = self.settings.detection
        positive = [
            DomainScore(domain, score) for domain, score in scores.items() if score > 0
        ]
        if not positive:
            return (DomainScore(GENERAL_DOMAIN, 0.0),)
        positive.sort(key=lambda d: (-d.score, detection.priority_of(d.domain)))
        return tuple(positive)

    def _significant_domains(self, domains: tuple[DomainScore, ...]) -> tuple[str, ...]:
        top = domains[0].score
        threshold = top * self.settings.detection.significance_ratio
        significant = [domains[0].domain]
        significant.extend(
            d.domain for d in domains[1:] if d.score > 0 and d.score >= threshold
        )
        return tuple(significant)

    def _infer_persona(self, primary: str, significant: tuple[str, ...]) -> str:
        """Fixed lookup: combination table first, then the single-domain table."""
        detection = self.settings.detection
        for secondary in significant[1:]:
            persona = detection.persona_combinations.get(
                f"{primary}+{secondary}"
            ) or detection.persona_combinations.get(f"{secondary}+{primary}")
            if persona:
                return persona
        return detection.personas.get(primary, detection.default_persona)

    # =========================================================================
    # COMPLEXITY
    # =========================================================================

    def _estimate_complexity(
        self, text: str, files: tuple[FileRef, ...]
    ) -> tuple[Complexity, int, int]:
        """
        Map file count, diff magnitude and keyword density to a complexity level.

        Each signal contributes 0, 1 or 2 points against fixed thresholds;
        the point total is bucketed by points_medium/points_high.

        Returns:
            Tuple of (complexity, points, total lines changed)
        """
        settings = self.settings.detection.complexity
        points = 0

        file_count = len(files)
        if file_count >= settings.files_high:
            points += 2
        elif file_count >= settings.files_medium:
            points += 1

        lines_changed = sum(f.lines_changed for f in files if f.lines_changed)
        if lines_changed >= settings.lines_high:
            points += 2
        elif lines_changed >= settings.lines_medium:
            points += 1

        words = WORD_PATTERN.findall(text.lower())
        if words:
            density = len(_matched_keywords(text, self._complexity_keywords)) / len(words)
            if density >= settings.density_high:
                points += 2
            elif density >= settings.density_medium:
                points += 1

        if points >= settings.points_high:
            return Complexity.HIGH, points, lines_changed
        if points >= settings.points_medium:
            return Complexity.MEDIUM, points, lines_changed
        return Complexity.LOW, points, lines_changed

    # =========================================================================
    # RISK
    # =========================================================================

    def _risk_factors(
        self,
        request: Request,
        paths: list[str],
        primary: str,
        significant: tuple[str, ...],
        complexity: Complexity,
        lines_changed: int,
    ) -> set[str]:
        """Enumerate which fixed risk factors apply to this request."""
        risk = self.settings.risk
        complexity_settings = self.settings.detection.complexity
        factors: set[str] = set()

        if any(_path_matches(p, risk.production_patterns) for p in paths):
            factors.add("production_files")
        if any(_path_matches(p, risk.infrastructure_patterns) for p in paths):
            factors.add("infrastructure_files")
        if risk.sensitive_domains.intersection(significant):
            factors.add("security_domain")

        has_tests = any(_path_matches(p, risk.test_patterns) for p in paths)
        touches_source = any(
            _path_matches(p, risk.source_patterns)
            and not _path_matches(p, risk.test_patterns)
            for p, f in zip(paths, request.files)
            if f.change_kind != ChangeKind.DELETED
        )
        if touches_source and not has_tests:
            factors.add("no_tests")

        # Only requests that carry change signals need a work item
        if request.work_item is None and (paths or primary != GENERAL_DOMAIN):
            factors.add("missing_work_item")

        if any(f.change_kind == ChangeKind.DELETED for f in request.files):
            factors.add("deleted_files")
        if complexity == Complexity.HIGH:
            factors.add("high_complexity")
        if _matched_keywords(request.text or "", self._risky_keywords):
            factors.add("risky_keywords")
        if lines_changed >= complexity_settings.lines_high:
            factors.add("large_change")

        return factors

    def _risk_score(self, factors: set[str]) -> float:
        points = self.settings.risk.factors
        total = sum(points.get(factor, 0.0) for factor in sorted(factors))
        return round(min(max(total, 0.0), MAX_RISK_SCORE), 2)

    def _risk_level(self, risk_score: float) -> RiskLevel:
        risk = self.settings.risk
        if risk_score >= risk.critical_cutoff:
            return RiskLevel.CRITICAL
        if risk_score >= risk.high_cutoff:
            return RiskLevel.HIGH
        if risk_score >= risk.medium_cutoff:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    # =========================================================================
    # CONFIDENCE
    # =========================================================================

    def _confidence(
        self,
        domains: tuple[DomainScore, ...],
        complexity: Complexity,
        risk_level: RiskLevel,
    ) -> float:
        """
        Confidence in the classification.

        certainty = (1 - ambiguity_weight * second / top) / tie_count, where
        tie_count is the number of domains sharing the top score. Dividing by
        tie_count makes confidence strictly decrease as more domains conflict.
        High complexity together with high/critical risk applies a further
        compound discount. The result is mapped onto [floor, 1].
        """
        detection = self.settings.detection
        floor = detection.confidence_floor
        top = domains[0].score
        if top <= 0:
            return floor

        second = domains[1].score if len(domains) > 1 else 0.0
        tie_count = sum(1 for d in domains if math.isclose(d.score, top))
        certainty = (1.0 - detection.ambiguity_weight * (second / top)) / tie_count

        if complexity == Complexity.HIGH and risk_level in (
            RiskLevel.HIGH,
            RiskLevel.CRITICAL,
        ):
            certainty *= detection.compound_discount

        certainty = min(max(certainty, 0.0), 1.0)
        return round(floor + (1.0 - floor) * certainty, 4)
