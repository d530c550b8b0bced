"""
Budgeted selection of snapshot content.

ContextBudgetSelector picks the most relevant content elements for a query
and caps them at the configured budget. It never raises: a malformed element
is dropped with a warning, and a scorer that fails across the board degrades
to "first N elements in snapshot order".
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from contextual_chat.core.models import ContentElement, ContentType, ScoredElement, VisibilityState
from .scorer import ContentScorer

logger = logging.getLogger("quart.app")


class ContextBudgetSelector:

    def __init__(self, scorer: Optional[ContentScorer] = None):
        self.scorer = scorer or ContentScorer()

    def select(
        self,
        elements: Sequence[ContentElement],
        user_query: str,
        max_elements: int,
        max_visualizations: Optional[int] = None,
    ) -> List[ContentElement]:
        """
        Return at most `max_elements` elements ordered by descending score.

        Equal scores keep their snapshot order. When `max_visualizations` is
        set, visualizations past that count are left out before truncation.
        """
        if not elements or max_elements <= 0:
            return []

        try:
            scored = self._score_all(elements, user_query)
            if not scored:
                logger.warning(
                    f"Scoring failed for all {len(elements)} content elements; "
                    f"falling back to snapshot order."
                )
                return list(elements[:max_elements])

            # sorted() is stable, so ties keep snapshot order even with reverse=True
            ranked = sorted(scored, key=lambda item: item.score, reverse=True)

            selected: List[ContentElement] = []
            visualizations = 0
            for item in ranked:
                if len(selected) >= max_elements:
                    break
                if item.element.type == ContentType.VISUALIZATION and max_visualizations is not None:
                    if visualizations >= max_visualizations:
                        continue
                    visualizations += 1
                selected.append(item.element)

            logger.debug(
                f"Selected {len(selected)} of {len(elements)} content elements. Top scores: "
                + ", ".join(f"{s.element.title or s.element.id}={s.score:.2f}" for s in ranked[:5])
            )
            return selected
        except Exception as e:
            logger.error(f"Error selecting content elements, using snapshot order: {e}", exc_info=True)
            return list(elements[:max_elements])

    def _score_all(self, elements: Sequence[ContentElement], user_query: str) -> List[ScoredElement]:
        scored = []
        for element in elements:
            try:
                score = self.scorer.score(element, user_query)
            except Exception as e:
                logger.warning(f"Skipping content element '{element.id}': scoring failed ({e})")
                continue
            scored.append(ScoredElement(element=element, score=score))
        return scored

    @staticmethod
    def stats(elements: Sequence[ContentElement]) -> Dict[str, Any]:
        """Type distribution and visibility counts, for logging and status endpoints."""
        type_distribution: Dict[str, int] = {}
        visible = 0
        in_viewport = 0
        for element in elements:
            type_distribution[element.type.value] = type_distribution.get(element.type.value, 0) + 1
            if element.visibility.state == VisibilityState.VISIBLE:
                visible += 1
            if element.visibility.in_viewport:
                in_viewport += 1
        return {
            "total_elements": len(elements),
            "type_distribution": type_distribution,
            "visibility": {"visible": visible, "in_viewport": in_viewport},
        }


def filter_by_permissions(
    elements: Sequence[ContentElement],
    permissions: Optional[Mapping[str, Any]],
) -> List[ContentElement]:
    """
    Drop content the user may not share with the model.

    Elements flagged ``metadata.sensitive`` are always removed; ids listed in
    ``permissions["restrictedElements"]`` are removed as well.
    """
    restricted = set((permissions or {}).get("restrictedElements") or [])
    allowed = []
    for element in elements:
        if element.metadata.get("sensitive") or element.id in restricted:
            logger.debug(f"Excluding content element '{element.id}' due to permissions")
            continue
        allowed.append(element)
    return allowed
