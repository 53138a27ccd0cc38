"""Data models for the NYC building insights pipeline.

This module defines the core data structures passed between pipeline stages:
the parsed question, the compiled SQL shape, analysis and pattern bundles,
conversation sessions and the response envelope handed to the presentation layer.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
import hashlib
import json
from typing import Any, Dict, List, Optional, Union


class Intent(str, Enum):
    """Closed set of question kinds the pipeline knows how to answer."""
    RISK_ASSESSMENT = "risk_assessment"
    TREND_ANALYSIS = "trend_analysis"
    VIOLATION_SEARCH = "violation_search"
    BUILDING_LOOKUP = "building_lookup"
    COMPARISON = "comparison"
    GENERAL_STATS = "general_stats"
    UNKNOWN = "unknown"

    @classmethod
    def from_label(cls, label: Any) -> Optional["Intent"]:
        """
        Map a free-form label onto the closed set.

        Returns None when the label is empty or names no known intent,
        so callers can tell "missing" apart from an explicit ``unknown``.
        """
        if label is None:
            return None
        if isinstance(label, Intent):
            return label
        normalized = str(label).strip().lower().replace("-", "_").replace(" ", "_")
        for intent in cls:
            if intent.value == normalized:
                return intent
        return None


class Importance(str, Enum):
    """Importance of a pattern finding."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


ENTITY_KINDS = ("location", "building_type", "time_period", "violation_type")
FILTER_OPERATORS = ("=", "LIKE", "BETWEEN")


def to_jsonable(value: Any) -> Any:
    """Recursively convert models, enums and dates into JSON-friendly values."""
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


@dataclass
class TimeRange:
    """
    Absolute date range resolved from a relative time phrase.

    Attributes:
        start: First day of the range (inclusive)
        end: Last day of the range (inclusive)
    """
    start: date
    end: date

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"TimeRange start {self.start} is after end {self.end}")

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass
class EntityValue:
    """
    A normalized piece of meaning extracted from the question.

    Attributes:
        kind: Entity kind ("location", "building_type", "time_period", "violation_type")
        raw: Text as produced by the completion service
        value: Canonical value (borough name, TimeRange, ...) or the raw text when unrecognized
        recognized: False when normalization found no canonical form
    """
    kind: str
    raw: str
    value: Union[str, TimeRange]
    recognized: bool = True

    @property
    def is_time_range(self) -> bool:
        return isinstance(self.value, TimeRange)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "raw": self.raw,
            "value": to_jsonable(self.value),
            "recognized": self.recognized,
        }


@dataclass
class Filter:
    """
    One WHERE condition requested against a dataset table.

    Attributes:
        table: Dataset table name (e.g. "pluto")
        column: Column name within the table
        operator: One of "=", "LIKE", "BETWEEN"
        value: Scalar value, or a two-element [start, end] pair for BETWEEN
    """
    table: str
    column: str
    operator: str
    value: Any

    def __post_init__(self):
        self.operator = str(self.operator).strip().upper()
        if self.operator not in FILTER_OPERATORS:
            raise ValueError(
                f"Unsupported filter operator: {self.operator}. "
                f"Supported: {', '.join(FILTER_OPERATORS)}"
            )
        if self.operator == "BETWEEN":
            if not isinstance(self.value, (list, tuple)) or len(self.value) != 2:
                raise ValueError("BETWEEN filters require exactly two values [start, end]")
            self.value = list(self.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "column": self.column,
            "operator": self.operator,
            "value": to_jsonable(self.value),
        }


@dataclass
class Aggregation:
    """A group-by request."""
    group_by: str

    def to_dict(self) -> Dict[str, str]:
        return {"group_by": self.group_by}


@dataclass
class StructuredQuery:
    """
    Canonical parsed representation of one user question.

    Attributes:
        intent: Classified intent
        original_query: Verbatim user text
        entities: Entity kind -> ordered list of normalized values
        filters: Explicit filters requested by the question
        aggregations: Group-by requests
        sort_order: Optional "column [ASC|DESC]" request
        limit: Maximum number of rows (must be positive)
    """
    intent: Intent
    original_query: str
    entities: Dict[str, List[EntityValue]] = field(default_factory=dict)
    filters: List[Filter] = field(default_factory=list)
    aggregations: List[Aggregation] = field(default_factory=list)
    sort_order: Optional[str] = None
    limit: int = 100

    def __post_init__(self):
        if isinstance(self.limit, bool) or not isinstance(self.limit, int) or self.limit <= 0:
            raise ValueError(f"limit must be a positive integer, got {self.limit!r}")

    @property
    def needs_clarification(self) -> bool:
        return self.intent == Intent.UNKNOWN

    def entity_values(self, kind: str) -> List[EntityValue]:
        """Return the entity values of a kind (empty list when absent)."""
        return list(self.entities.get(kind) or [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent.value,
            "original_query": self.original_query,
            "entities": {
                kind: [v.to_dict() for v in values]
                for kind, values in self.entities.items()
            },
            "filters": [f.to_dict() for f in self.filters],
            "aggregations": [a.to_dict() for a in self.aggregations],
            "sort_order": self.sort_order,
            "limit": self.limit,
        }


@dataclass
class Join:
    """A joined table in a compiled query."""
    table: str
    alias: str
    on: str


@dataclass
class Predicate:
    """
    One rendered WHERE predicate.

    Attributes:
        filters: Filters the predicate was built from (several when OR-grouped)
        sql: Rendered SQL fragment with $n placeholders
    """
    filters: List[Filter]
    sql: str


@dataclass
class CompiledQuery:
    """
    Concrete, parameter-bound data store query derived from a StructuredQuery.

    Attributes:
        intent: Intent whose compilation shape was used
        sql: SQL text with $n placeholders
        params: Positional parameters bound to the placeholders
        tables: Tables read by the query
        joins: Join descriptions
        predicates: WHERE predicates in order
        group_by: GROUP BY columns
        order_by: ORDER BY clause
        limit: Row limit (bound as the last parameter when present)
        skipped_filters: Filters that could not be applied to this shape
    """
    intent: Intent
    sql: str
    params: List[Any] = field(default_factory=list)
    tables: List[str] = field(default_factory=list)
    joins: List[Join] = field(default_factory=list)
    predicates: List[Predicate] = field(default_factory=list)
    group_by: List[str] = field(default_factory=list)
    order_by: Optional[str] = None
    limit: Optional[int] = None
    skipped_filters: List[Filter] = field(default_factory=list)

    @property
    def where_clause(self) -> str:
        if not self.predicates:
            return "1=1"
        return " AND ".join(p.sql for p in self.predicates)

    def fingerprint(self) -> str:
        """Stable hash over SQL text and bound parameters."""
        key_data = {"sql": self.sql, "params": self.params}
        key_str = json.dumps(key_data, sort_keys=True, default=str)
        return hashlib.sha256(key_str.encode()).hexdigest()


@dataclass
class QueryResult:
    """
    Rows returned by the data store.

    Attributes:
        rows: Result rows as JSON-safe dictionaries
        row_count: Number of rows
        execution_time: Seconds spent executing
        cached: Whether the rows came from the result cache
    """
    rows: List[Dict[str, Any]]
    row_count: int
    execution_time: float = 0.0
    cached: bool = False


@dataclass
class ConversationTurn:
    """A completed question inside a conversation."""
    query: StructuredQuery
    response_ref: Optional[str]
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class ConversationSession:
    """
    Per-user multi-turn state.

    Attributes:
        session_id: Opaque, globally unique identifier
        owner: User identifier or the anonymous marker
        created_at: Creation time
        last_active: Last time the session was touched
        history: Completed turns, oldest first
        active_intent: Last known intent
        active_entities: Last known entity set, used to fill gaps in follow-ups
        message_count: Number of turns recorded, including trimmed ones
    """
    session_id: str
    owner: str
    created_at: datetime = field(default_factory=datetime.now)
    last_active: datetime = field(default_factory=datetime.now)
    history: List[ConversationTurn] = field(default_factory=list)
    active_intent: Optional[Intent] = None
    active_entities: Dict[str, List[EntityValue]] = field(default_factory=dict)
    message_count: int = 0

    @property
    def last_turn(self) -> Optional[ConversationTurn]:
        return self.history[-1] if self.history else None

    def summary(self) -> Dict[str, Any]:
        """Summary shape returned by the conversations endpoints."""
        return {
            "conversationId": self.session_id,
            "startTime": self.created_at.isoformat(),
            "lastActivity": self.last_active.isoformat(),
            "messageCount": self.message_count,
            "currentTopic": self.active_intent.value if self.active_intent else None,
            "currentEntities": {
                kind: [to_jsonable(v.value) for v in values]
                for kind, values in self.active_entities.items()
            },
            "queryHistory": [turn.query.original_query for turn in self.history],
        }


@dataclass
class AnalysisResult:
    """
    Intent-specific statistics bundle.

    Attributes:
        intent: Intent whose routine produced the bundle
        details: Routine-specific statistics (risk_stats, trend_stats, ...)
        visualization_data: Named chart series, present only when non-empty
        basic_stats: Generic record count, field list and numeric summaries
    """
    intent: Intent
    details: Dict[str, Any] = field(default_factory=dict)
    visualization_data: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    basic_stats: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.details.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        result = {"intent": self.intent.value}
        result.update(to_jsonable(self.details))
        result["visualization_data"] = to_jsonable(self.visualization_data)
        result["basic_stats"] = to_jsonable(self.basic_stats)
        return result


@dataclass
class PatternFinding:
    """
    A threshold-triggered observation.

    Attributes:
        kind: Finding kind (e.g. "geographic_concentration")
        description: Human-readable description
        importance: low, medium or high
        supporting_data: Values that triggered the rule, including the threshold
    """
    kind: str
    description: str
    importance: Importance
    supporting_data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "description": self.description,
            "importance": self.importance.value,
            "supportingData": to_jsonable(self.supporting_data),
        }


@dataclass
class PatternReport:
    """All findings produced by one detection pass."""
    significant_patterns: List[PatternFinding] = field(default_factory=list)
    anomalies: List[PatternFinding] = field(default_factory=list)
    clusters: List[PatternFinding] = field(default_factory=list)
    seasonality: Optional[PatternFinding] = None

    def all_findings(self) -> List[PatternFinding]:
        findings = self.significant_patterns + self.anomalies + self.clusters
        if self.seasonality:
            findings.append(self.seasonality)
        return findings

    def to_dict(self) -> Dict[str, Any]:
        return {
            "significantPatterns": [f.to_dict() for f in self.significant_patterns],
            "anomalies": [f.to_dict() for f in self.anomalies],
            "clusters": [f.to_dict() for f in self.clusters],
            "seasonality": self.seasonality.to_dict() if self.seasonality else None,
        }


@dataclass
class NarrativeResult:
    """Narrative insights generated from an analysis."""
    summary: str
    key_findings: List[str] = field(default_factory=list)
    explanations: List[str] = field(default_factory=list)
    confidence: float = 0.0


@dataclass
class PatternExplanation:
    """Explanation generated for a single finding."""
    pattern: str
    explanation: str
    confidence: float = 0.0


@dataclass
class Visualization:
    """Chart configuration consumed by the presentation layer."""
    type: str
    title: str
    data: List[Dict[str, Any]]
    config: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "title": self.title,
            "data": to_jsonable(self.data),
            "config": self.config,
        }


@dataclass
class RefinementSuggestion:
    """A follow-up question the user can ask next."""
    text: str
    query: str

    def to_dict(self) -> Dict[str, str]:
        return {"text": self.text, "query": self.query}


@dataclass
class ResponseEnvelope:
    """
    Sole output of the pipeline, consumed by the presentation layer.

    Attributes:
        response_id: Identifier referenced from the conversation history
        narrative_text: Markdown narrative
        key_findings: Findings extracted from the narrative
        explanations: Explanations extracted from the narrative
        recommendations: Actionable recommendations
        visualizations: Chart configs
        raw_data_sample: First rows of the result set
        refinement_suggestions: Suggested follow-up questions
        session_id: Conversation the turn was recorded in
        timestamp: Creation time
        confidence_score: Placeholder confidence from narrative generation
    """
    response_id: str
    narrative_text: str
    session_id: str
    intent: Intent
    original_query: str
    key_findings: List[str] = field(default_factory=list)
    explanations: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    visualizations: List[Visualization] = field(default_factory=list)
    raw_data_sample: List[Dict[str, Any]] = field(default_factory=list)
    refinement_suggestions: List[RefinementSuggestion] = field(default_factory=list)
    patterns: Optional[PatternReport] = None
    basic_stats: Dict[str, Any] = field(default_factory=dict)
    row_count: int = 0
    message_count: int = 0
    needs_clarification: bool = False
    confidence_score: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "responseId": self.response_id,
            "narrativeText": self.narrative_text,
            "keyFindings": list(self.key_findings),
            "explanations": list(self.explanations),
            "recommendations": list(self.recommendations),
            "visualizations": [v.to_dict() for v in self.visualizations],
            "rawDataSample": to_jsonable(self.raw_data_sample),
            "refinementSuggestions": [s.to_dict() for s in self.refinement_suggestions],
            "sessionId": self.session_id,
            "timestamp": self.timestamp.isoformat(),
            "confidenceScore": self.confidence_score,
            "intent": self.intent.value,
            "originalQuery": self.original_query,
            "patterns": self.patterns.to_dict() if self.patterns else None,
            "basicStats": to_jsonable(self.basic_stats),
            "rowCount": self.row_count,
            "messageCount": self.message_count,
            "needsClarification": self.needs_clarification,
        }
