"""
Relevance scoring of snapshot content elements.

ContentScorer turns (element, query) into a number; higher means the element
is more worth spending prompt space on. The score is additive over five
factors: content type, visibility, keyword relevance, data richness and
layout. All numeric constants live in ScoringWeights, a replaceable table,
since they are tuning parameters rather than part of the algorithm.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Optional

from contextual_chat.core.models import ContentElement, ContentType, VisibilityState


DEFAULT_TYPE_WEIGHTS: Dict[ContentType, float] = {
    ContentType.ALERT: 2.5,
    ContentType.METRIC: 2.2,
    ContentType.VISUALIZATION: 2.0,
    ContentType.DATA_TABLE: 1.8,
    ContentType.SEARCH_RESULTS: 1.6,
    ContentType.FILTER: 1.4,
    ContentType.CONTROL: 1.4,
    ContentType.FORM: 1.2,
    ContentType.TEXT: 1.0,
    ContentType.IMAGE: 0.8,
    ContentType.OTHER: 0.7,
    ContentType.NAVIGATION: 0.6,
    ContentType.BREADCRUMB: 0.5,
}

DEFAULT_KEYWORD_WEIGHTS: Dict[str, float] = {
    "chart": 2.0,
    "graph": 2.0,
    "table": 2.0,
    "data": 1.5,
    "visualization": 2.0,
    "metric": 2.0,
    "trend": 1.8,
    "filter": 1.5,
    "search": 1.5,
    "analysis": 1.8,
    "insight": 1.8,
    "performance": 1.6,
    "error": 2.0,
    "alert": 2.0,
}

_TOKEN_RE = re.compile(r"\w+")


@dataclass(frozen=True)
class ScoringWeights:
    """Every tunable constant used by ContentScorer."""

    type_weights: Dict[ContentType, float] = field(default_factory=lambda: dict(DEFAULT_TYPE_WEIGHTS))
    keyword_weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_KEYWORD_WEIGHTS))
    unknown_type_weight: float = 1.0

    # --- Visibility ---
    visible_bonus: float = 1.0
    partially_visible_bonus: float = 0.5
    viewport_bonus: float = 0.5

    # --- Keyword relevance ---
    exact_match_bonus: float = 2.0
    query_token_factor: float = 0.5
    keyword_table_factor: float = 0.3
    description_factor: float = 0.8
    min_token_length: int = 3

    # --- Data richness ---
    chart_bonus: float = 0.5
    trend_bonus: float = 0.3
    chart_points_cap: float = 0.5
    chart_points_saturation: int = 100
    table_bonus: float = 0.4
    table_rows_cap: float = 0.4
    table_rows_saturation: int = 50
    form_bonus: float = 0.2

    # --- Layout ---
    page_height: float = 1000.0
    position_factor: float = 0.3
    large_element_area: float = 500_000.0
    size_factor: float = 0.2

    def with_overrides(
        self,
        type_weights: Optional[Mapping[str, float]] = None,
        keyword_weights: Optional[Mapping[str, float]] = None,
    ) -> "ScoringWeights":
        """Return a copy with configured weight tables merged over the defaults."""
        merged_types = dict(self.type_weights)
        for name, weight in (type_weights or {}).items():
            merged_types[ContentType.parse(name)] = float(weight)
        merged_keywords = dict(self.keyword_weights)
        for keyword, weight in (keyword_weights or {}).items():
            merged_keywords[keyword.lower()] = float(weight)
        return replace(self, type_weights=merged_types, keyword_weights=merged_keywords)


class ContentScorer:
    """Pure, deterministic relevance scoring for content elements."""

    def __init__(self, weights: Optional[ScoringWeights] = None):
        self.weights = weights or ScoringWeights()

    def score(self, element: ContentElement, user_query: str) -> float:
        w = self.weights
        score = w.type_weights.get(element.type, w.unknown_type_weight)
        score += self._visibility_score(element)
        query_tokens = self._query_tokens(user_query)
        if element.title:
            score += self._keyword_score(element.title, user_query, query_tokens)
        if element.description:
            score += self._keyword_score(element.description, user_query, query_tokens) * w.description_factor
        if element.data:
            score += self._data_richness_score(element)
        if element.position is not None:
            score += self._layout_score(element)
        return score

    def _visibility_score(self, element: ContentElement) -> float:
        w = self.weights
        score = 0.0
        state = element.visibility.state
        if state == VisibilityState.VISIBLE:
            score += w.visible_bonus
        elif state == VisibilityState.PARTIALLY_VISIBLE:
            score += w.partially_visible_bonus
        if element.visibility.in_viewport:
            score += w.viewport_bonus
        return score

    def _query_tokens(self, user_query: str) -> List[str]:
        if not user_query:
            return []
        tokens = []
        for token in _TOKEN_RE.findall(user_query.lower()):
            if len(token) >= self.weights.min_token_length and token not in tokens:
                tokens.append(token)
        return tokens

    def _keyword_score(self, text: str, user_query: str, query_tokens: List[str]) -> float:
        w = self.weights
        text_lower = text.lower()
        score = 0.0

        query_lower = (user_query or "").strip().lower()
        if query_lower and query_lower in text_lower:
            score += w.exact_match_bonus

        for token in query_tokens:
            if token in text_lower:
                score += w.keyword_weights.get(token, 1.0) * w.query_token_factor

        # Query-independent boost for domain terms.
        for keyword, weight in w.keyword_weights.items():
            if keyword in text_lower:
                score += weight * w.keyword_table_factor

        return score

    def _data_richness_score(self, element: ContentElement) -> float:
        w = self.weights
        score = 0.0

        chart = element.chart_data
        if chart:
            score += w.chart_bonus
            if chart.get("trends"):
                score += w.trend_bonus
            points = len(chart.get("values") or [])
            score += _saturating(points, w.chart_points_cap, w.chart_points_saturation)

        metric = element.metric_data
        if metric and metric.get("trend"):
            score += w.trend_bonus

        table = element.table_data
        if table:
            score += w.table_bonus
            rows = len(table.get("rows") or [])
            score += _saturating(rows, w.table_rows_cap, w.table_rows_saturation)

        if element.form_data:
            score += w.form_bonus

        return score

    def _layout_score(self, element: ContentElement) -> float:
        w = self.weights
        position = element.position
        # Higher on the page is better; clamped to [0, 1] before weighting.
        position_bonus = min(1.0, max(0.0, 1.0 - position.y / w.page_height)) * w.position_factor
        size_bonus = 0.0
        if position.width and position.height:
            size_bonus = min(1.0, position.area / w.large_element_area) * w.size_factor
        return position_bonus + size_bonus


def _saturating(count: int, cap: float, saturation: int) -> float:
    """Logarithmic volume bonus reaching `cap` at `saturation` items and never exceeding it."""
    if count <= 0:
        return 0.0
    return min(cap, cap * math.log1p(count) / math.log1p(saturation))
