"""
Post-processing of non-streamed chat answers.

Attaches a ``metadata.contextual`` block to the final assistant message
describing which page the answer relates to. The answer text itself is
never changed.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from contextual_chat.core.models import Snapshot, last_output_message

if TYPE_CHECKING:
    from contextual_chat.chat.base import ChatResult

logger = logging.getLogger("quart.app")


class ContextualResponseProcessor:

    def process(self, result: "ChatResult", snapshot: Optional[Snapshot]) -> "ChatResult":
        if snapshot is None or not result.messages:
            return result
        try:
            messages = copy.deepcopy(result.messages)
            last = last_output_message(messages)
            if last is None:
                return result
            metadata = dict(last.get("metadata") or {})
            metadata["contextual"] = self.contextual_metadata(snapshot)
            last["metadata"] = metadata
            return replace(result, messages=messages)
        except Exception as e:
            logger.error(f"Error processing contextual response: {e}", exc_info=True)
            return result

    def contextual_metadata(self, snapshot: Snapshot) -> Dict[str, Any]:
        return {
            "contextSource": {
                "app": snapshot.page.app or None,
                "title": snapshot.page.title or None,
                "contentElements": len(snapshot.content),
                "hasFilters": any(f.enabled for f in snapshot.filters),
                "timeRange": snapshot.time_range.display() if snapshot.time_range else None,
            },
            "insights": extract_insights(snapshot),
            "processingInfo": {
                "contextEnhanced": True,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        }


def extract_insights(snapshot: Snapshot) -> List[str]:
    """Short factual notes about the snapshot (trends, record counts, active filters)."""
    insights = []
    for element in snapshot.content:
        chart = element.chart_data
        if isinstance(chart, dict) and isinstance(chart.get("trends"), dict):
            direction = chart["trends"].get("direction")
            if direction:
                insights.append(f"{element.title} shows {direction} trend")
        table = element.table_data
        if isinstance(table, dict) and table.get("totalRows"):
            insights.append(f"{element.title} contains {table['totalRows']} records")
    active_filters = sum(1 for f in snapshot.filters if f.enabled)
    if active_filters:
        insights.append(f"Data is filtered by {active_filters} active filter(s)")
    return insights
