"""
Query complexity analysis for initial tier selection.

Score 0-100, weighted sum of four rule-based factors:
- linguistic (30%): length, sentence count, logical / comparison / "why" terms
- domain (30%): advanced spreadsheet features, complex functions, statistics
- computational (25%): multi-step, nested conditions, transformations, debugging
- context (15%): image attached, previous failures, priority, history length

Levels: simple (score <= complexity_threshold), complex (> 70), else moderate.
"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from tiergate.core.logging import get_logger

logger = get_logger(__name__)

WEIGHTS = {
    "linguistic": 0.30,
    "domain": 0.30,
    "computational": 0.25,
    "context": 0.15,
}

COMPLEX_SCORE = 70
LEVEL_TIERS = {"simple": 1, "moderate": 2, "complex": 3}

LOGICAL_TERMS = re.compile(r"\b(if|when|unless|and|or|but|however|although|whereas)\b", re.IGNORECASE)
COMPARISON_TERMS = re.compile(r"\b(compare|contrast|versus|vs|better|worse|more|less|than)\b", re.IGNORECASE)
OPEN_QUESTION_TERMS = re.compile(r"\b(how|why|explain|analyze|evaluate|assess)\b", re.IGNORECASE)

ADVANCED_FEATURES = [
    (re.compile(r"\bpivot\b", re.IGNORECASE), 30),
    (re.compile(r"\barray formula\b", re.IGNORECASE), 40),
    (re.compile(r"\b(vba|macro)\b", re.IGNORECASE), 50),
    (re.compile(r"\bpower query\b", re.IGNORECASE), 45),
    (re.compile(r"\bdata model\b", re.IGNORECASE), 40),
    (re.compile(r"\bcube function\b", re.IGNORECASE), 50),
    (re.compile(r"\bsolver\b", re.IGNORECASE), 35),
]
COMPLEX_FUNCTIONS = [
    re.compile(rf"\b{name}\b", re.IGNORECASE)
    for name in (
        "XLOOKUP", "FILTER", "SEQUENCE", "LAMBDA", "LET", "SUMIFS", "COUNTIFS",
        r"INDEX.*MATCH", "INDIRECT", "OFFSET", "GETPIVOTDATA",
    )
]
STATISTICAL_TERMS = re.compile(r"\b(regression|correlation|variance|deviation|forecast|trend)\b", re.IGNORECASE)
LARGE_DATA_TERMS = re.compile(r"\b(million|thousands?|large\s+dataset|performance|optimize)\b", re.IGNORECASE)

MULTI_STEP_TERMS = re.compile(r"\b(then|after|next|step|finally|afterwards)\b", re.IGNORECASE)
NESTED_CONDITIONS = re.compile(r"\b(if\b.*\bif|when\b.*\bwhen)\b", re.IGNORECASE)
CALCULATION_TERMS = re.compile(r"\b(calculate|compute|derive|formula|equation)\b", re.IGNORECASE)
TRANSFORMATION_TERMS = re.compile(r"\b(transform|convert|reshape|pivot|unpivot|normalize)\b", re.IGNORECASE)
ERROR_TERMS = re.compile(r"\b(error|debug|troubleshoot|fix|issue|problem)\b", re.IGNORECASE)


@dataclass
class ComplexityAnalysis:
    score: int
    level: str
    recommended_tier: int
    details: Dict[str, int] = field(default_factory=dict)


def _linguistic_score(query: str) -> int:
    word_count = len(query.split())
    if word_count <= 5:
        score = 10
    elif word_count <= 15:
        score = 20
    elif word_count <= 30:
        score = 40
    elif word_count <= 50:
        score = 60
    else:
        score = 80

    sentences = [s for s in re.split(r"[.!?]+", query) if s.strip()]
    if len(sentences) > 3:
        score += 20
    elif len(sentences) > 1:
        score += 10

    if LOGICAL_TERMS.search(query):
        score += 15
    if COMPARISON_TERMS.search(query):
        score += 15
    if OPEN_QUESTION_TERMS.search(query):
        score += 20
    return min(score, 100)


def _domain_score(query: str) -> int:
    score = sum(points for pattern, points in ADVANCED_FEATURES if pattern.search(query))
    score += 25 * sum(1 for pattern in COMPLEX_FUNCTIONS if pattern.search(query))
    if STATISTICAL_TERMS.search(query):
        score += 30
    if LARGE_DATA_TERMS.search(query):
        score += 20
    return min(score, 100)


def _computational_score(query: str) -> int:
    score = 0
    if len(MULTI_STEP_TERMS.findall(query)) > 2:
        score += 25
    if NESTED_CONDITIONS.search(query):
        score += 30
    if CALCULATION_TERMS.search(query):
        score += 20
    if TRANSFORMATION_TERMS.search(query):
        score += 25
    if ERROR_TERMS.search(query):
        score += 20
    return min(score, 100)


def _context_score(context: Dict[str, Any]) -> int:
    score = 0
    if context.get("has_image"):
        score += 30
    if (context.get("previous_failures") or 0) > 0:
        score += 20
    if context.get("priority") == "high":
        score += 25
    if context.get("expert_mode"):
        score += 20

    length = context.get("conversation_length")
    if length is not None:
        if length > 10:
            score += 30
        elif length > 6:
            score += 20
        elif length > 3:
            score += 10
    return min(score, 100)


class QueryComplexityAnalyzer:
    """Rule-based complexity scorer; no model calls."""

    def __init__(self, max_tier: int = 3):
        self.max_tier = max_tier

    def analyze(
        self,
        query: str,
        context: Optional[Dict[str, Any]] = None,
        complexity_threshold: int = 30,
    ) -> ComplexityAnalysis:
        """
        Score a query and recommend a starting tier.

        Context flags honoured after scoring: force_tier, cost_optimization
        (one tier down), quality_first (one tier up), has_image (at least tier 2).
        """
        context = context or {}
        details = {
            "linguistic": _linguistic_score(query),
            "domain": _domain_score(query),
            "computational": _computational_score(query),
            "context": _context_score(context),
        }
        score = min(round(sum(details[name] * weight for name, weight in WEIGHTS.items())), 100)

        if score <= complexity_threshold:
            level = "simple"
        elif score > COMPLEX_SCORE:
            level = "complex"
        else:
            level = "moderate"

        tier = self._adjust_tier(LEVEL_TIERS[level], context)
        logger.debug(
            "query_complexity_analyzed",
            score=score,
            level=level,
            recommended_tier=tier,
            **details,
        )
        return ComplexityAnalysis(score=score, level=level, recommended_tier=tier, details=details)

    def _adjust_tier(self, tier: int, context: Dict[str, Any]) -> int:
        forced = context.get("force_tier")
        if forced:
            return min(max(int(forced), 1), self.max_tier)
        if context.get("cost_optimization") and tier > 1:
            tier -= 1
        elif context.get("quality_first") and tier < self.max_tier:
            tier += 1
        elif context.get("has_image") and tier == 1:
            tier = 2
        return min(tier, self.max_tier)
