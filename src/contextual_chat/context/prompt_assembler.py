"""
Prompt assembly from a dashboard snapshot.

PromptAssembler renders the selected snapshot content into ordered text
sections (page, content, filters, time range, recent actions) and wraps them
around the user's question. The section order is fixed so the model always
sees structural context before conversational details. When a snapshot
contributes nothing, the user's message is returned untouched.
"""

from __future__ import annotations

import copy
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from contextual_chat.core.config import ContextualChatConfig
from contextual_chat.core.exceptions import AugmentationError
from contextual_chat.core.models import ContentElement, PromptSection, Snapshot
from .selector import ContextBudgetSelector, filter_by_permissions

logger = logging.getLogger("quart.app")
audit_logger = logging.getLogger("contextual_chat.audit")

MAX_RECENT_ACTIONS = 5

CONTEXT_ENVELOPE = """Context: I'm currently viewing a {app} page with the following information:

{sections}

User Question: {question}

Please provide a helpful response based on the context above. Focus on the specific data, visualizations, and insights visible on the current page."""


class PromptAssembler:

    def __init__(
        self,
        selector: Optional[ContextBudgetSelector] = None,
        config: Optional[ContextualChatConfig] = None,
    ):
        self.selector = selector or ContextBudgetSelector()
        self.config = config or ContextualChatConfig()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def assemble(
        self,
        user_message: str,
        snapshot: Optional[Snapshot],
        config: Optional[ContextualChatConfig] = None,
    ) -> str:
        """Merge the snapshot's context into `user_message`; unchanged if there is nothing to add."""
        if snapshot is None:
            return user_message
        sections = self.build_sections(user_message, snapshot, config or self.config)
        if not sections:
            return user_message
        return CONTEXT_ENVELOPE.format(
            app=snapshot.page.app or "dashboard",
            sections="\n\n".join(section.text for section in sections),
            question=user_message,
        )

    def enhance_messages(
        self,
        messages: Sequence[Dict[str, Any]],
        snapshot: Optional[Snapshot],
    ) -> List[Dict[str, Any]]:
        """
        Return a copy of `messages` whose last entry carries the assembled prompt.

        Only a trailing ``input`` message is rewritten; anything else is
        returned as-is. The caller's list and dicts are never mutated.
        """
        if not messages:
            return list(messages)
        last = messages[-1]
        if last.get("type") != "input":
            return list(messages)

        original = last.get("content") or ""
        try:
            enhanced_content = self.assemble(original, snapshot)
        except Exception as e:
            raise AugmentationError(f"Could not assemble contextual prompt: {e}", original_error=e) from e
        enhanced = list(messages)
        enhanced[-1] = {**copy.deepcopy(last), "content": enhanced_content}
        logger.debug(
            f"Enhanced message with UI context: {len(original)} -> {len(enhanced_content)} chars, "
            f"{len(snapshot.content) if snapshot else 0} content elements available."
        )
        return enhanced

    def build_sections(
        self,
        user_message: str,
        snapshot: Snapshot,
        config: ContextualChatConfig,
    ) -> List[PromptSection]:
        sections: List[PromptSection] = []

        if config.include_page_context and not snapshot.page.is_empty:
            sections.append(PromptSection("page", self._page_section(snapshot)))

        if snapshot.content:
            candidates = list(snapshot.content)
            if config.respect_permissions:
                candidates = filter_by_permissions(candidates, snapshot.permissions)
            selected = self.selector.select(
                candidates,
                user_message,
                config.max_content_elements,
                max_visualizations=config.max_visualizations,
            )
            if selected:
                if config.audit_access:
                    audit_logger.info(
                        f"context_accessed app={snapshot.page.app or '-'} "
                        f"elements={','.join(element.id for element in selected)}"
                    )
                sections.append(PromptSection("content", self._content_section(selected)))

        enabled_filters = [f for f in snapshot.filters if f.enabled]
        if enabled_filters:
            lines = "\n".join(f"- {f.render()}" for f in enabled_filters)
            sections.append(PromptSection("filters", f"Active Filters:\n{lines}"))

        if snapshot.time_range is not None:
            sections.append(PromptSection("time_range", f"Time Range: {snapshot.time_range.display()}"))

        if config.include_user_actions and snapshot.user_actions:
            recent = snapshot.user_actions[-MAX_RECENT_ACTIONS:]
            lines = "\n".join(f"- {action.type}: {_render_details(action.details)}" for action in recent)
            sections.append(PromptSection("actions", f"Recent User Actions:\n{lines}"))

        return sections

    # ------------------------------------------------------------------
    # Section renderers
    # ------------------------------------------------------------------

    @staticmethod
    def _page_section(snapshot: Snapshot) -> str:
        page = snapshot.page
        lines = ["Page Information:"]
        if page.app:
            lines.append(f"- App: {page.app}")
        if page.title:
            lines.append(f"- Title: {page.title}")
        if page.url:
            lines.append(f"- URL: {page.url}")
        if page.breadcrumbs:
            lines.append(f"- Navigation: {' > '.join(page.breadcrumbs)}")
        return "\n".join(lines)

    @staticmethod
    def _content_section(elements: Sequence[ContentElement]) -> str:
        lines = []
        for index, element in enumerate(elements, start=1):
            line = f"{index}. {element.title or 'Untitled'} ({element.type.value})"
            if element.description:
                line += f": {element.description}"
            line += _data_clause(element)
            lines.append(line)
        return "Visible Content:\n" + "\n".join(lines)


def _data_clause(element: ContentElement) -> str:
    clause = ""
    chart = element.chart_data
    if chart:
        clause += f" - Chart showing {len(chart.get('values') or [])} data points"
    table = element.table_data
    if table:
        clause += f" - Table with {len(table.get('rows') or [])} rows"
    metric = element.metric_data
    if metric and metric.get("value") is not None:
        value = f"{metric['value']} {metric.get('unit') or ''}".strip()
        clause += f" - Value: {value}"
        if metric.get("trend"):
            clause += f" (trend {_trend_label(metric['trend'])})"
    return clause


def _trend_label(trend: Any) -> str:
    if isinstance(trend, dict):
        return str(trend.get("direction") or "unknown")
    return str(trend)


def _render_details(details: Any) -> str:
    if details is None:
        return ""
    if isinstance(details, str):
        return details
    return json.dumps(details, sort_keys=True, default=str)
