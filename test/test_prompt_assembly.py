"""
Unit tests for prompt assembly and contextual response post-processing.

Validates that PromptAssembler:
1. Returns the user's message untouched when the snapshot adds nothing
2. Renders sections in page -> content -> filters -> time range -> actions order
3. Lists only enabled filters and at most the last five user actions
4. Never mutates the caller's message list
"""
import sys
import os
import logging

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

logging.basicConfig(level=logging.INFO)

from contextual_chat.chat.base import ChatResult
from contextual_chat.context.prompt_assembler import PromptAssembler
from contextual_chat.context.response_processor import ContextualResponseProcessor, extract_insights
from contextual_chat.core.config import ContextualChatConfig
from contextual_chat.core.exceptions import AugmentationError
from contextual_chat.core.models import Snapshot


DASHBOARD_SNAPSHOT = {
    "page": {
        "url": "http://dashboards/app/dashboards#/view/sales",
        "title": "Sales Overview",
        "app": "dashboards",
        "breadcrumbs": [{"text": "Dashboards"}, "Sales Overview"],
    },
    "content": [
        {"id": "orders", "type": "data_table", "title": "Orders",
         "data": {"tableData": {"rows": [[1], [2], [3]], "totalRows": 1200}}},
        {"id": "revenue", "type": "visualization", "title": "Revenue Trend",
         "description": "Monthly revenue",
         "data": {"chartData": {"values": [10, 12, 15, 18], "trends": {"direction": "increasing"}}}},
        {"id": "errors", "type": "metric", "title": "Error Rate",
         "data": {"metricData": {"value": 0.4, "unit": "%", "trend": "down"}}},
    ],
    "filters": [
        {"field": "region", "operator": "is", "value": "EMEA", "enabled": True},
        {"field": "channel", "operator": "is not", "value": "web", "enabled": False},
        {"field": "status", "operator": "is", "value": "paid", "enabled": True},
    ],
    "timeRange": {"from": "now-7d", "to": "now"},
    "userActions": [{"type": "click", "details": {"target": f"panel-{i}"}} for i in range(7)],
}


def test_empty_snapshot_returns_message_unchanged():
    assembler = PromptAssembler()
    for message in ["show revenue", "", "  spaced  "]:
        assert assembler.assemble(message, Snapshot()) == message
        assert assembler.assemble(message, Snapshot.from_dict({})) == message
        assert assembler.assemble(message, None) == message


def test_zero_budget_with_no_other_sections_returns_message_unchanged():
    config = ContextualChatConfig(max_content_elements=0, include_page_context=False)
    assembler = PromptAssembler(config=config)
    snapshot = Snapshot.from_dict({"content": [{"id": "a", "type": "text", "title": "Notes"}]})
    assert assembler.assemble("hello", snapshot) == "hello"


def test_sections_render_in_order():
    assembler = PromptAssembler()
    prompt = assembler.assemble("show revenue", Snapshot.from_dict(DASHBOARD_SNAPSHOT))

    assert prompt.startswith("Context: I'm currently viewing a dashboards page")
    markers = ["Page Information:", "Visible Content:", "Active Filters:", "Time Range:", "Recent User Actions:", "User Question: show revenue"]
    positions = [prompt.index(marker) for marker in markers]
    assert positions == sorted(positions)
    assert "- Navigation: Dashboards > Sales Overview" in prompt
    assert prompt.rstrip().endswith("insights visible on the current page.")


def test_revenue_trend_listed_before_orders():
    assembler = PromptAssembler()
    prompt = assembler.assemble("show revenue", Snapshot.from_dict(DASHBOARD_SNAPSHOT))
    assert "Revenue Trend" in prompt and "Orders" in prompt
    assert prompt.index("Revenue Trend") < prompt.index("Orders")


def test_content_lines_carry_data_clauses():
    assembler = PromptAssembler()
    prompt = assembler.assemble("show revenue", Snapshot.from_dict(DASHBOARD_SNAPSHOT))
    assert "Revenue Trend (visualization): Monthly revenue - Chart showing 4 data points" in prompt
    assert "Orders (data_table) - Table with 3 rows" in prompt
    assert "Error Rate (metric) - Value: 0.4 % (trend down)" in prompt


def test_only_enabled_filters_are_listed():
    assembler = PromptAssembler()
    snapshot = Snapshot.from_dict(DASHBOARD_SNAPSHOT)
    sections = assembler.build_sections("q", snapshot, ContextualChatConfig())
    filters = next(s for s in sections if s.name == "filters")
    assert filters.text.splitlines() == [
        "Active Filters:",
        "- region is EMEA",
        "- status is paid",
    ]


def test_time_range_and_recent_actions():
    assembler = PromptAssembler()
    snapshot = Snapshot.from_dict(DASHBOARD_SNAPSHOT)
    sections = {s.name: s.text for s in assembler.build_sections("q", snapshot, ContextualChatConfig())}
    assert sections["time_range"] == "Time Range: now-7d to now"
    action_lines = sections["actions"].splitlines()[1:]
    assert len(action_lines) == 5
    assert action_lines[0] == '- click: {"target": "panel-2"}'
    assert action_lines[-1] == '- click: {"target": "panel-6"}'


def test_page_and_actions_toggles():
    config = ContextualChatConfig(include_page_context=False, include_user_actions=False)
    assembler = PromptAssembler(config=config)
    prompt = assembler.assemble("q", Snapshot.from_dict(DASHBOARD_SNAPSHOT))
    assert "Page Information:" not in prompt
    assert "Recent User Actions:" not in prompt
    assert "Visible Content:" in prompt


def test_sensitive_content_is_excluded():
    raw = dict(DASHBOARD_SNAPSHOT)
    raw["content"] = DASHBOARD_SNAPSHOT["content"] + [
        {"id": "salaries", "type": "data_table", "title": "Salaries", "metadata": {"sensitive": True}},
    ]
    raw["permissions"] = {"restrictedElements": ["errors"]}
    prompt = PromptAssembler().assemble("q", Snapshot.from_dict(raw))
    assert "Salaries" not in prompt
    assert "Error Rate" not in prompt
    assert "Revenue Trend" in prompt


def test_enhance_messages_rewrites_only_trailing_input():
    assembler = PromptAssembler()
    snapshot = Snapshot.from_dict(DASHBOARD_SNAPSHOT)
    messages = [
        {"type": "input", "contentType": "text", "content": "hi"},
        {"type": "output", "contentType": "markdown", "content": "hello"},
        {"type": "input", "contentType": "text", "content": "show revenue"},
    ]
    enhanced = assembler.enhance_messages(messages, snapshot)

    assert messages[-1]["content"] == "show revenue"
    assert enhanced is not messages
    assert enhanced[:2] == messages[:2]
    assert "User Question: show revenue" in enhanced[-1]["content"]
    assert enhanced[-1]["contentType"] == "text"

    trailing_output = messages[:2]
    assert assembler.enhance_messages(trailing_output, snapshot) == trailing_output


# ---------------------------------------------------------------------------
# ContextualResponseProcessor
# ---------------------------------------------------------------------------

def test_response_processor_adds_metadata_without_touching_text():
    snapshot = Snapshot.from_dict(DASHBOARD_SNAPSHOT)
    result = ChatResult(
        messages=[
            {"type": "input", "content": "show revenue"},
            {"type": "output", "content": "Revenue is up.", "contentType": "markdown"},
        ],
        conversation_id="c1",
        interaction_id="c1-1",
    )
    processed = ContextualResponseProcessor().process(result, snapshot)

    output = processed.messages[-1]
    assert output["content"] == "Revenue is up."
    contextual = output["metadata"]["contextual"]
    assert contextual["contextSource"]["app"] == "dashboards"
    assert contextual["contextSource"]["contentElements"] == 3
    assert contextual["contextSource"]["hasFilters"] is True
    assert contextual["processingInfo"]["contextEnhanced"] is True
    assert "metadata" not in result.messages[-1]


def test_response_processor_without_snapshot_is_identity():
    result = ChatResult(messages=[{"type": "output", "content": "x"}], conversation_id="c", interaction_id="i")
    assert ContextualResponseProcessor().process(result, None) is result


def test_extract_insights():
    insights = extract_insights(Snapshot.from_dict(DASHBOARD_SNAPSHOT))
    assert "Revenue Trend shows increasing trend" in insights
    assert "Orders contains 1200 records" in insights
    assert "Data is filtered by 2 active filter(s)" in insights


def test_enhance_messages_wraps_assembly_failures():
    class BrokenSelector:
        def select(self, elements, user_query, max_elements, max_visualizations=None):
            raise RuntimeError("selector exploded")

    assembler = PromptAssembler(selector=BrokenSelector())
    messages = [{"type": "input", "content": "show revenue"}]
    with pytest.raises(AugmentationError) as excinfo:
        assembler.enhance_messages(messages, Snapshot.from_dict(DASHBOARD_SNAPSHOT))
    assert isinstance(excinfo.value.original_error, RuntimeError)
    assert messages == [{"type": "input", "content": "show revenue"}]
