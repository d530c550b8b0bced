"""
Unit tests for content relevance scoring and budgeted selection.

Covers:
1. Type, visibility, keyword, data-richness and layout factors of ContentScorer
2. Replaceable weight tables
3. ContextBudgetSelector ordering, budget caps and failure fallbacks
4. Permission filtering
"""
import sys
import os
import logging

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

logging.basicConfig(level=logging.INFO)

from contextual_chat.core.models import (
    ContentElement,
    ContentType,
    Position,
    Visibility,
    VisibilityState,
)
from contextual_chat.context.scorer import ContentScorer, ScoringWeights
from contextual_chat.context.selector import ContextBudgetSelector, filter_by_permissions


def make_element(element_id, element_type=ContentType.TEXT, title="", **kwargs):
    return ContentElement(id=element_id, type=element_type, title=title, **kwargs)


class ExplodingScorer:
    """Scorer that fails for selected element ids (or for all of them)."""
    def __init__(self, failing_ids=None):
        self.inner = ContentScorer()
        self.failing_ids = failing_ids

    def score(self, element, user_query):
        if self.failing_ids is None or element.id in self.failing_ids:
            raise ValueError(f"malformed data in {element.id}")
        return self.inner.score(element, user_query)


# ---------------------------------------------------------------------------
# ContentScorer
# ---------------------------------------------------------------------------

def test_type_weight_orders_bare_elements():
    scorer = ContentScorer()
    metric = scorer.score(make_element("m", ContentType.METRIC), "")
    chart = scorer.score(make_element("v", ContentType.VISUALIZATION), "")
    nav = scorer.score(make_element("n", ContentType.NAVIGATION), "")
    assert metric > chart > nav


def test_query_token_in_title_increases_score():
    scorer = ContentScorer()
    for query in ["show revenue", "revenue by region", "what about revenue?"]:
        without = make_element("a", ContentType.VISUALIZATION, "Quarterly numbers")
        with_token = make_element("b", ContentType.VISUALIZATION, "Quarterly numbers revenue")
        assert scorer.score(with_token, query) > scorer.score(without, query)


def test_short_query_tokens_are_ignored():
    scorer = ContentScorer()
    plain = make_element("a", ContentType.TEXT, "Panel")
    tagged = make_element("b", ContentType.TEXT, "Panel by")
    # "by" is below the minimum token length and not an exact match of the full query
    assert scorer.score(plain, "sales by region") == scorer.score(tagged, "sales by region")


def test_exact_query_match_bonus():
    scorer = ContentScorer()
    exact = make_element("a", ContentType.TEXT, "error rate")
    partial = make_element("b", ContentType.TEXT, "rate error")
    assert abs(scorer.score(exact, "error rate") - scorer.score(partial, "error rate") - 2.0) < 1e-9


def test_description_counts_less_than_title():
    scorer = ContentScorer()
    in_title = make_element("a", ContentType.TEXT, "latency")
    in_description = make_element("b", ContentType.TEXT, "", description="latency")
    assert scorer.score(in_title, "latency") > scorer.score(in_description, "latency")


def test_visibility_bonus():
    scorer = ContentScorer()
    visible = make_element("a", visibility=Visibility(VisibilityState.VISIBLE, in_viewport=True))
    partial = make_element("b", visibility=Visibility(VisibilityState.PARTIALLY_VISIBLE))
    hidden = make_element("c", visibility=Visibility(VisibilityState.HIDDEN))
    assert scorer.score(visible, "") > scorer.score(partial, "") > scorer.score(hidden, "")


def test_data_richness_saturates():
    scorer = ContentScorer()
    small = make_element("a", ContentType.VISUALIZATION, data={"chart_data": {"values": list(range(10))}})
    large = make_element("b", ContentType.VISUALIZATION, data={"chart_data": {"values": list(range(100))}})
    huge = make_element("c", ContentType.VISUALIZATION, data={"chart_data": {"values": list(range(100000))}})
    assert scorer.score(large, "") > scorer.score(small, "")
    assert scorer.score(huge, "") == scorer.score(large, "")


def test_layout_prefers_higher_elements():
    scorer = ContentScorer()
    top = make_element("a", position=Position(x=0, y=0, width=100, height=100))
    bottom = make_element("b", position=Position(x=0, y=900, width=100, height=100))
    below_fold = make_element("c", position=Position(x=0, y=5000, width=100, height=100))
    above_page = make_element("d", position=Position(x=0, y=-500, width=100, height=100))
    assert scorer.score(top, "") > scorer.score(bottom, "") > scorer.score(below_fold, "")
    assert scorer.score(above_page, "") == scorer.score(top, "")


def test_score_is_deterministic():
    scorer = ContentScorer()
    element = make_element(
        "a",
        ContentType.DATA_TABLE,
        "Orders table",
        description="All orders with errors",
        data={"table_data": {"rows": [[1], [2], [3]]}},
        position=Position(10, 20, 300, 200),
    )
    assert scorer.score(element, "orders") == scorer.score(element, "orders")


def test_weight_overrides():
    weights = ScoringWeights().with_overrides(type_weights={"navigation": 5.0}, keyword_weights={"Revenue": 3.0})
    scorer = ContentScorer(weights)
    assert weights.type_weights[ContentType.NAVIGATION] == 5.0
    assert weights.keyword_weights["revenue"] == 3.0
    assert scorer.score(make_element("n", ContentType.NAVIGATION), "") > scorer.score(make_element("m", ContentType.METRIC), "")
    # defaults are untouched
    assert ScoringWeights().type_weights[ContentType.NAVIGATION] == 0.6


# ---------------------------------------------------------------------------
# ContextBudgetSelector
# ---------------------------------------------------------------------------

def test_select_respects_budget_and_order():
    selector = ContextBudgetSelector()
    scorer = selector.scorer
    elements = [make_element(f"e{i}", t, f"Panel {i}") for i, t in enumerate([
        ContentType.TEXT, ContentType.METRIC, ContentType.NAVIGATION,
        ContentType.VISUALIZATION, ContentType.DATA_TABLE, ContentType.OTHER,
    ])]
    for budget in range(0, len(elements) + 2):
        selected = selector.select(elements, "panel", budget)
        assert len(selected) <= budget
        scores = [scorer.score(e, "panel") for e in selected]
        assert scores == sorted(scores, reverse=True)


def test_select_keeps_snapshot_order_for_ties():
    selector = ContextBudgetSelector()
    elements = [make_element(f"t{i}", ContentType.TEXT, "Same") for i in range(5)]
    assert [e.id for e in selector.select(elements, "", 5)] == ["t0", "t1", "t2", "t3", "t4"]


def test_select_ranks_revenue_trend_above_orders():
    selector = ContextBudgetSelector()
    orders = make_element("orders", ContentType.DATA_TABLE, "Orders")
    revenue = make_element("revenue", ContentType.VISUALIZATION, "Revenue Trend")
    selected = selector.select([orders, revenue], "show revenue", 10)
    assert [e.id for e in selected] == ["revenue", "orders"]


def test_select_caps_visualizations():
    selector = ContextBudgetSelector()
    elements = [make_element(f"v{i}", ContentType.VISUALIZATION, f"Chart {i}") for i in range(4)]
    elements.append(make_element("t", ContentType.TEXT, "Notes"))
    selected = selector.select(elements, "", 10, max_visualizations=2)
    assert sum(1 for e in selected if e.type == ContentType.VISUALIZATION) == 2
    assert "t" in [e.id for e in selected]


def test_select_skips_elements_that_fail_scoring():
    selector = ContextBudgetSelector(ExplodingScorer(failing_ids={"bad"}))
    elements = [make_element("good1", title="a"), make_element("bad"), make_element("good2", title="b")]
    selected = selector.select(elements, "", 10)
    assert [e.id for e in selected] == ["good1", "good2"]


def test_select_falls_back_to_snapshot_order_when_all_scoring_fails():
    selector = ContextBudgetSelector(ExplodingScorer())
    elements = [make_element(f"e{i}") for i in range(5)]
    selected = selector.select(elements, "anything", 3)
    assert [e.id for e in selected] == ["e0", "e1", "e2"]


def test_select_empty_and_zero_budget():
    selector = ContextBudgetSelector()
    assert selector.select([], "query", 5) == []
    assert selector.select([make_element("a")], "query", 0) == []


def test_stats():
    elements = [
        make_element("a", ContentType.METRIC, visibility=Visibility(VisibilityState.VISIBLE, True)),
        make_element("b", ContentType.METRIC, visibility=Visibility(VisibilityState.HIDDEN)),
        make_element("c", ContentType.TEXT),
    ]
    stats = ContextBudgetSelector.stats(elements)
    assert stats["total_elements"] == 3
    assert stats["type_distribution"] == {"metric": 2, "text": 1}
    assert stats["visibility"] == {"visible": 2, "in_viewport": 1}


def test_filter_by_permissions():
    elements = [
        make_element("public"),
        make_element("secret", metadata={"sensitive": True}),
        make_element("restricted"),
    ]
    allowed = filter_by_permissions(elements, {"restrictedElements": ["restricted"]})
    assert [e.id for e in allowed] == ["public"]
    assert [e.id for e in filter_by_permissions(elements, None)] == ["public", "restricted"]
