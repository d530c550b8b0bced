"""
Data models for the contextual chat pipeline.

Snapshot describes what the user is looking at when a chat message is sent.
It is produced by the content-extraction collaborator as camelCase JSON and
converted here into immutable dataclasses. ContentElement is one visible unit
(chart, table, metric, ...) inside a snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


class ContentType(Enum):
    VISUALIZATION = "visualization"
    DATA_TABLE = "data_table"
    SEARCH_RESULTS = "search_results"
    METRIC = "metric"
    TEXT = "text"
    FORM = "form"
    CONTROL = "control"
    NAVIGATION = "navigation"
    OTHER = "other"
    # Types the extraction side emits in addition to the core set
    ALERT = "alert"
    BREADCRUMB = "breadcrumb"
    FILTER = "filter"
    IMAGE = "image"

    @classmethod
    def parse(cls, value: Any) -> "ContentType":
        if isinstance(value, ContentType):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.OTHER


class VisibilityState(Enum):
    VISIBLE = "visible"
    HIDDEN = "hidden"
    PARTIALLY_VISIBLE = "partially_visible"
    LOADING = "loading"


@dataclass(frozen=True)
class Visibility:
    state: VisibilityState = VisibilityState.VISIBLE
    in_viewport: bool = False

    @classmethod
    def from_value(cls, raw: Any) -> "Visibility":
        """
        Accepts a bare state string ("visible", "partially-visible", ...) or an
        object like {"isVisible": true, "inViewport": true} / {"state": ..., "inViewport": ...}.
        """
        if raw is None:
            return cls()
        if isinstance(raw, str):
            return cls(state=_parse_visibility_state(raw))
        if "state" in raw:
            state = _parse_visibility_state(raw["state"])
        elif "isVisible" in raw or "is_visible" in raw:
            is_visible = raw.get("isVisible", raw.get("is_visible"))
            state = VisibilityState.VISIBLE if is_visible else VisibilityState.HIDDEN
        else:
            state = VisibilityState.VISIBLE
        in_viewport = bool(raw.get("inViewport", raw.get("in_viewport", False)))
        return cls(state=state, in_viewport=in_viewport)


def _parse_visibility_state(raw: Any) -> VisibilityState:
    normalized = str(raw).strip().lower().replace("-", "_")
    try:
        return VisibilityState(normalized)
    except ValueError:
        return VisibilityState.HIDDEN


@dataclass(frozen=True)
class Position:
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0

    @property
    def area(self) -> float:
        return self.width * self.height

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> Optional["Position"]:
        if not raw:
            return None
        return cls(
            x=float(raw.get("x", 0) or 0),
            y=float(raw.get("y", 0) or 0),
            width=float(raw.get("width", 0) or 0),
            height=float(raw.get("height", 0) or 0),
        )


# Wire keys of the type-specific payload, normalized to snake_case.
_DATA_KEYS = {
    "chartData": "chart_data",
    "tableData": "table_data",
    "metricData": "metric_data",
    "formData": "form_data",
}


@dataclass(frozen=True)
class ContentElement:
    """One visible unit of a dashboard: chart, table, metric, text panel, ..."""

    id: str
    type: ContentType
    title: str = ""
    description: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    """Type-specific payload keyed by chart_data / table_data / metric_data / form_data."""
    position: Optional[Position] = None
    visibility: Visibility = field(default_factory=Visibility)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def chart_data(self) -> Optional[Mapping[str, Any]]:
        return self.data.get("chart_data")

    @property
    def table_data(self) -> Optional[Mapping[str, Any]]:
        return self.data.get("table_data")

    @property
    def metric_data(self) -> Optional[Mapping[str, Any]]:
        return self.data.get("metric_data")

    @property
    def form_data(self) -> Optional[Mapping[str, Any]]:
        return self.data.get("form_data")

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any], index: int = 0) -> "ContentElement":
        data = {}
        for key, value in (raw.get("data") or {}).items():
            data[_DATA_KEYS.get(key, key)] = value
        return cls(
            id=str(raw.get("id") or f"element-{index}"),
            type=ContentType.parse(raw.get("type")),
            title=raw.get("title") or "",
            description=raw.get("description") or None,
            data=data,
            position=Position.from_dict(raw.get("position")),
            visibility=Visibility.from_value(raw.get("visibility")),
            metadata=dict(raw.get("metadata") or {}),
        )


@dataclass(frozen=True)
class Filter:
    field: str
    operator: str = "is"
    value: Any = None
    enabled: bool = True
    display_name: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Filter":
        return cls(
            field=str(raw.get("field", "")),
            operator=str(raw.get("operator", "is")),
            value=raw.get("value"),
            enabled=bool(raw.get("enabled", True)),
            display_name=raw.get("displayName") or raw.get("display_name"),
        )

    def render(self) -> str:
        return f"{self.field} {self.operator} {self.value}"


@dataclass(frozen=True)
class TimeRange:
    start: str
    end: str
    display_name: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> Optional["TimeRange"]:
        if not raw:
            return None
        return cls(
            start=str(raw.get("from", "")),
            end=str(raw.get("to", "")),
            display_name=raw.get("displayName") or raw.get("display_name"),
        )

    def display(self) -> str:
        return self.display_name or f"{self.start} to {self.end}"


@dataclass(frozen=True)
class UserAction:
    type: str
    details: Any = None
    timestamp: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "UserAction":
        return cls(
            type=str(raw.get("type", "unknown")),
            details=raw.get("details"),
            timestamp=raw.get("timestamp"),
        )


@dataclass(frozen=True)
class PageContext:
    url: str = ""
    title: str = ""
    app: str = ""
    route: str = ""
    breadcrumbs: Tuple[str, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.url or self.title or self.app or self.breadcrumbs)

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "PageContext":
        if not raw:
            return cls()
        crumbs = []
        for crumb in raw.get("breadcrumbs") or []:
            # breadcrumbs arrive either as plain strings or as {"text": ..., "href": ...}
            text = crumb.get("text") if isinstance(crumb, Mapping) else crumb
            if text:
                crumbs.append(str(text))
        return cls(
            url=raw.get("url") or "",
            title=raw.get("title") or "",
            app=raw.get("app") or raw.get("appId") or "",
            route=raw.get("route") or "",
            breadcrumbs=tuple(crumbs),
            metadata=dict(raw.get("metadata") or {}),
        )


@dataclass(frozen=True)
class Snapshot:
    """
    Point-in-time description of a dashboard's visible state.

    Created once per user request and never mutated; the pipeline only reads it.
    """

    page: PageContext = field(default_factory=PageContext)
    content: Tuple[ContentElement, ...] = ()
    navigation: Dict[str, Any] = field(default_factory=dict)
    filters: Tuple[Filter, ...] = ()
    time_range: Optional[TimeRange] = None
    user_actions: Tuple[UserAction, ...] = ()
    permissions: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return (
            self.page.is_empty
            and not self.content
            and not self.filters
            and self.time_range is None
            and not self.user_actions
        )

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "Snapshot":
        if not raw:
            return cls()
        return cls(
            page=PageContext.from_dict(raw.get("page")),
            content=tuple(
                ContentElement.from_dict(item, index)
                for index, item in enumerate(raw.get("content") or [])
            ),
            navigation=dict(raw.get("navigation") or {}),
            filters=tuple(Filter.from_dict(item) for item in raw.get("filters") or []),
            time_range=TimeRange.from_dict(raw.get("timeRange") or raw.get("time_range")),
            user_actions=tuple(
                UserAction.from_dict(item)
                for item in raw.get("userActions") or raw.get("user_actions") or []
            ),
            permissions=dict(raw.get("permissions") or {}),
        )


@dataclass(frozen=True)
class ScoredElement:
    element: ContentElement
    score: float


@dataclass(frozen=True)
class PromptSection:
    name: str
    text: str


def last_output_message(messages: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if messages and messages[-1].get("type") == "output":
        return messages[-1]
    return None
