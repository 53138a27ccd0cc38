"""
LLM response parsing and validation utilities.

This module turns completion-service text into validated payloads: the JSON
object describing an interpreted question, and the free-text sections of
narrative and recommendation responses.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
    field_validator,
    model_validator,
)

from nycdb_insights.core.models import ENTITY_KINDS, FILTER_OPERATORS, Intent
from nycdb_insights.error_handler import InterpretationFailure

logger = logging.getLogger(__name__)


# Entity keys as produced by the completion service -> canonical kind
ENTITY_KEY_ALIASES = {
    "location": "location",
    "locations": "location",
    "borough": "location",
    "boroughs": "location",
    "building_type": "building_type",
    "building_types": "building_type",
    "buildingType": "building_type",
    "buildingTypes": "building_type",
    "time_period": "time_period",
    "time_periods": "time_period",
    "timePeriod": "time_period",
    "timePeriods": "time_period",
    "violation_type": "violation_type",
    "violation_types": "violation_type",
    "violationType": "violation_type",
    "violationTypes": "violation_type",
}


class FilterPayload(BaseModel):
    """One filter as returned by the completion service."""
    model_config = ConfigDict(extra="ignore")

    table: str
    column: str
    operator: str
    value: Any = None

    @field_validator("operator", mode="before")
    @classmethod
    def normalize_operator(cls, v):
        operator = str(v).strip().upper()
        if operator not in FILTER_OPERATORS:
            raise ValueError(f"Unsupported operator: {v}")
        return operator

    @model_validator(mode="after")
    def check_between_values(self):
        if self.operator == "BETWEEN":
            if not isinstance(self.value, (list, tuple)) or len(self.value) != 2:
                raise ValueError("BETWEEN requires exactly two values")
        return self


class InterpretationPayload(BaseModel):
    """
    Interpreted question as returned by the completion service.

    Accepts both snake_case keys and the camelCase keys older prompts
    produced (queryType, sortOrder, buildingTypes, ...).
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    intent: Optional[Intent] = Field(
        default=None, validation_alias=AliasChoices("intent", "queryType", "query_type")
    )
    entities: Dict[str, List[str]] = Field(default_factory=dict)
    filters: List[FilterPayload] = Field(default_factory=list)
    aggregations: List[str] = Field(default_factory=list)
    sort_order: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("sort_order", "sortOrder")
    )
    limit: Optional[int] = None

    @field_validator("intent", mode="before")
    @classmethod
    def coerce_intent(cls, v):
        # Labels outside the closed set count as missing
        return Intent.from_label(v)

    @field_validator("entities", mode="before")
    @classmethod
    def normalize_entities(cls, v):
        if not isinstance(v, dict):
            return {}

        entities: Dict[str, List[str]] = {}
        for key, values in v.items():
            kind = ENTITY_KEY_ALIASES.get(key)
            if kind is None or kind not in ENTITY_KINDS:
                continue
            if values is None:
                continue
            if not isinstance(values, (list, tuple)):
                values = [values]
            for value in values:
                if value is None:
                    continue
                text = value if isinstance(value, str) else json.dumps(value, default=str)
                text = text.strip()
                if text:
                    entities.setdefault(kind, []).append(text)
        return entities

    @field_validator("filters", mode="before")
    @classmethod
    def drop_invalid_filters(cls, v):
        if not isinstance(v, list):
            return []

        valid = []
        for raw in v:
            try:
                valid.append(FilterPayload.model_validate(raw))
            except PydanticValidationError as e:
                logger.warning(f"Dropping invalid filter {raw!r}: {e.error_count()} error(s)")
        return valid

    @field_validator("aggregations", mode="before")
    @classmethod
    def normalize_aggregations(cls, v):
        if not isinstance(v, list):
            return []

        group_by = []
        for item in v:
            if isinstance(item, str) and item.strip():
                group_by.append(item.strip())
            elif isinstance(item, dict):
                column = item.get("group_by") or item.get("groupBy") or item.get("field")
                if isinstance(column, str) and column.strip():
                    group_by.append(column.strip())
        return group_by

    @field_validator("sort_order", mode="before")
    @classmethod
    def normalize_sort_order(cls, v):
        if isinstance(v, str):
            return v.strip() or None
        if isinstance(v, dict):
            column = v.get("column") or v.get("field")
            direction = v.get("direction") or v.get("order") or "ASC"
            if isinstance(column, str) and column.strip():
                return f"{column.strip()} {str(direction).upper()}"
        return None

    @field_validator("limit", mode="before")
    @classmethod
    def coerce_limit(cls, v):
        if v is None or isinstance(v, bool):
            return None
        try:
            limit = int(v)
        except (TypeError, ValueError):
            return None
        return limit if limit > 0 else None


class LLMResponseValidator:
    """Validator for completion-service responses."""

    @staticmethod
    def extract_json_object(response: str) -> Dict[str, Any]:
        """
        Find the first substring of the response that decodes as a JSON object.

        Args:
            response: Raw completion text (may include prose or code fences)

        Returns:
            Decoded JSON object

        Raises:
            InterpretationFailure: If no JSON object can be decoded
        """
        if not response:
            raise InterpretationFailure("Empty completion")

        decoder = json.JSONDecoder()
        index = response.find("{")
        while index != -1:
            try:
                parsed, _ = decoder.raw_decode(response, index)
            except json.JSONDecodeError:
                index = response.find("{", index + 1)
                continue
            if isinstance(parsed, dict):
                return parsed
            index = response.find("{", index + 1)

        raise InterpretationFailure("Could not extract JSON from model response")

    @staticmethod
    def validate_interpretation(response: str) -> InterpretationPayload:
        """
        Parse and validate an interpretation response.

        Raises:
            InterpretationFailure: If no payload can be parsed
        """
        data = LLMResponseValidator.extract_json_object(response)
        try:
            return InterpretationPayload.model_validate(data)
        except PydanticValidationError as e:
            raise InterpretationFailure(
                f"Interpretation payload failed validation ({e.error_count()} error(s))"
            ) from e

    @staticmethod
    def is_non_empty(response: Optional[str]) -> bool:
        """Check that a completion carries any text."""
        return bool(response and response.strip())


class NarrativeParser:
    """Heuristic extraction of sections from narrative text. Never raises."""

    FINDING_MARKERS = ("significant", "notable", "important", "found that")
    EXPLANATION_PATTERN = re.compile(
        r"(?:because|due to|explained by|result of|caused by)[^.]+", re.IGNORECASE
    )
    KEY_FINDINGS_PATTERN = re.compile(r"key findings:?([\s\S]*?)(?:\n\n|$)", re.IGNORECASE)
    RECOMMENDATION_PREFIX = re.compile(r"^(?:\d+\.\s+)?(?:\*\*)?Recommendation:(?:\*\*)?\s*", re.IGNORECASE)
    NUMBERED_LINE = re.compile(r"^\d+\.\s+")

    @staticmethod
    def extract_key_findings(text: str) -> List[str]:
        """
        Extract key findings from a "Key Findings:" section, or fall back to
        sentences that read like findings.
        """
        if not text:
            return []

        match = NarrativeParser.KEY_FINDINGS_PATTERN.search(text)
        if match and match.group(1).strip():
            items = re.split(r"\n-|\n\d+\.", match.group(1))
            return [item.strip() for item in items if item.strip()]

        sentences = re.split(r"\.\s+", text)
        return [
            sentence.strip().rstrip(".") + "."
            for sentence in sentences
            if any(marker in sentence for marker in NarrativeParser.FINDING_MARKERS)
        ]

    @staticmethod
    def extract_explanations(text: str) -> List[str]:
        """Extract causal phrases ("because ...", "due to ...")."""
        if not text:
            return []
        return [m.group(0).strip() for m in NarrativeParser.EXPLANATION_PATTERN.finditer(text)]

    @staticmethod
    def extract_recommendations(text: str) -> List[str]:
        """Extract recommendation lines with their prefixes stripped."""
        if not text:
            return []

        recommendations = []
        for line in re.split(r"\n+", text):
            line = line.strip()
            if "recommendation:" not in line.lower() and not NarrativeParser.NUMBERED_LINE.match(line):
                continue
            cleaned = NarrativeParser.RECOMMENDATION_PREFIX.sub("", line)
            cleaned = NarrativeParser.NUMBERED_LINE.sub("", cleaned).strip()
            if cleaned:
                recommendations.append(cleaned)
        return recommendations
