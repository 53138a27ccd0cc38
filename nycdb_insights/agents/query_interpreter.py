"""
Query Interpreter for natural language questions about NYC buildings.

This module implements the QueryInterpreter that turns a free-text question
into a StructuredQuery: it asks the completion service for an intent and
entities, normalizes boroughs, building types and time phrases, and fills
gaps in follow-up questions from the conversation's active state.
"""

import logging
import re
from dataclasses import replace
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional

from dateutil.relativedelta import relativedelta

from nycdb_insights.core.models import (
    Aggregation,
    ConversationSession,
    EntityValue,
    Filter,
    Intent,
    StructuredQuery,
    TimeRange,
)
from nycdb_insights.error_handler import InterpretationFailure
from nycdb_insights.llm.llm_provider import LLMProvider
from nycdb_insights.llm.prompt_templates import PromptTemplates
from nycdb_insights.llm.response_parser import LLMResponseValidator

logger = logging.getLogger(__name__)


NYC_BOROUGHS = ["manhattan", "brooklyn", "queens", "bronx", "staten island"]

# Checked in order; "mixed use" first so "mixed use residential" is not read as residential
BUILDING_TYPES = [
    ("mixed use", ("mixed use", "mixed-use", "mixeduse")),
    ("residential", ("residential",)),
    ("commercial", ("commercial",)),
]

NUMBER_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
}

_COUNT = r"(\d+|" + "|".join(NUMBER_WORDS) + r")"
YEARS_PATTERN = re.compile(r"\b(?:past|last)\s+" + _COUNT + r"\s+years?\b")
MONTHS_PATTERN = re.compile(r"\b(?:past|last)\s+" + _COUNT + r"\s+months?\b")
BARE_YEAR_PATTERN = re.compile(r"\b(1[89]\d{2}|20\d{2})\b")

FOLLOW_UP_PATTERN = re.compile(r"\b(these|those|them|it|this|that)\b", re.IGNORECASE)

# Entity kinds a follow-up question may inherit from the conversation
INHERITED_ENTITY_KINDS = ("location", "building_type", "time_period")


class QueryInterpreter:
    """
    Agent responsible for interpreting natural language questions.

    Converts questions into StructuredQuery objects using the completion
    service, normalizes entities and resolves follow-up questions against
    the conversation session.
    """

    def __init__(self, llm_provider: LLMProvider,
                 today_provider: Callable[[], date] = date.today):
        """
        Initialize QueryInterpreter.

        Args:
            llm_provider: LLM provider for question interpretation
            today_provider: Returns "today" for relative time phrases
        """
        self.llm_provider = llm_provider
        self.today_provider = today_provider
        logger.info("QueryInterpreter initialized")

    async def interpret(self, raw_text: str,
                        session: Optional[ConversationSession] = None) -> StructuredQuery:
        """
        Interpret a natural language question.

        Args:
            raw_text: The user's question
            session: Conversation session for follow-up resolution (optional)

        Returns:
            StructuredQuery; intent is ``unknown`` when the question could not
            be interpreted
        """
        logger.info(f"Interpreting query: {raw_text}")

        prompt = PromptTemplates.format_interpretation_prompt(
            query=raw_text,
            history=self._history_context(session)
        )

        try:
            content = await self._complete(prompt)
            payload = LLMResponseValidator.validate_interpretation(content)
        except InterpretationFailure as e:
            logger.warning(f"Could not interpret query, asking for clarification: {e}")
            return StructuredQuery(intent=Intent.UNKNOWN, original_query=raw_text)

        entities: Dict[str, List[EntityValue]] = {}
        for kind, values in payload.entities.items():
            entities[kind] = [self.normalize_entity(kind, value) for value in values]

        query = StructuredQuery(
            intent=payload.intent or Intent.UNKNOWN,
            original_query=raw_text,
            entities=entities,
            filters=[
                Filter(table=f.table, column=f.column, operator=f.operator, value=f.value)
                for f in payload.filters
            ],
            aggregations=[Aggregation(group_by=column) for column in payload.aggregations],
            sort_order=payload.sort_order,
            limit=payload.limit or 100,
        )

        resolved = self.resolve_follow_up(query, session)
        logger.info(f"Interpreted query as {resolved.intent.value}")
        return resolved

    async def _complete(self, prompt: str) -> str:
        """Call the completion service, reporting any failure as an interpretation failure."""
        try:
            response = await self.llm_provider.agenerate(
                prompt=prompt,
                temperature=0.3,  # Lower temperature for more consistent parsing
                max_tokens=500
            )
        except Exception as e:
            raise InterpretationFailure(f"Completion service failed: {e.__class__.__name__}") from e
        return response.content

    def _history_context(self, session: Optional[ConversationSession]) -> List[Dict[str, Any]]:
        """Describe the last two turns for the prompt."""
        if session is None or not session.history:
            return []

        return [
            {
                "query": turn.query.original_query,
                "intent": turn.query.intent.value,
                "entities": {
                    kind: [value.raw for value in values]
                    for kind, values in turn.query.entities.items()
                },
            }
            for turn in session.history[-2:]
        ]

    # ------------------------------------------------------------------
    # Entity normalization
    # ------------------------------------------------------------------

    def normalize_entity(self, kind: str, raw: str) -> EntityValue:
        """Normalize one extracted entity, tagging values with no canonical form."""
        if kind == "location":
            return self._normalize_location(raw)
        if kind == "building_type":
            return self._normalize_building_type(raw)
        if kind == "time_period":
            return self._normalize_time_period(raw)
        return EntityValue(kind=kind, raw=raw, value=raw, recognized=True)

    def _normalize_location(self, raw: str) -> EntityValue:
        lowered = raw.lower()
        for borough in NYC_BOROUGHS:
            if borough in lowered:
                return EntityValue(kind="location", raw=raw, value=borough.title())
        return EntityValue(kind="location", raw=raw, value=raw, recognized=False)

    def _normalize_building_type(self, raw: str) -> EntityValue:
        lowered = raw.lower()
        for canonical, spellings in BUILDING_TYPES:
            if any(spelling in lowered for spelling in spellings):
                return EntityValue(kind="building_type", raw=raw, value=canonical)
        return EntityValue(kind="building_type", raw=raw, value=raw, recognized=False)

    def _normalize_time_period(self, raw: str) -> EntityValue:
        time_range = self.resolve_time_phrase(raw)
        if time_range is None:
            return EntityValue(kind="time_period", raw=raw, value=raw, recognized=False)
        return EntityValue(kind="time_period", raw=raw, value=time_range)

    def resolve_time_phrase(self, phrase: str) -> Optional[TimeRange]:
        """
        Convert a relative time phrase into an absolute date range.

        Args:
            phrase: Phrase such as "last year" or "past 6 months"

        Returns:
            TimeRange, or None when the phrase is not understood or the
            range falls outside the supported calendar
        """
        try:
            return self._resolve_time_phrase(phrase.lower().strip())
        except (ValueError, OverflowError) as e:
            logger.warning(f"Time phrase '{phrase}' is out of range: {e}")
            return None

    def _resolve_time_phrase(self, text: str) -> Optional[TimeRange]:
        today = self.today_provider()
        year = today.year

        match = YEARS_PATTERN.search(text)
        if match:
            count = self._to_number(match.group(1))
            return TimeRange(start=date(year - count, 1, 1), end=date(year, 12, 31))

        match = MONTHS_PATTERN.search(text)
        if match:
            count = self._to_number(match.group(1))
            return TimeRange(start=today - relativedelta(months=count), end=today)

        if "last month" in text or "previous month" in text:
            first_of_month = today.replace(day=1)
            start = first_of_month - relativedelta(months=1)
            return TimeRange(start=start, end=first_of_month - timedelta(days=1))

        if "last year" in text or "previous year" in text:
            return TimeRange(start=date(year - 1, 1, 1), end=date(year - 1, 12, 31))

        if "this year" in text or "current year" in text:
            return TimeRange(start=date(year, 1, 1), end=date(year, 12, 31))

        match = BARE_YEAR_PATTERN.search(text)
        if match:
            bare_year = int(match.group(1))
            return TimeRange(start=date(bare_year, 1, 1), end=date(bare_year, 12, 31))

        return None

    @staticmethod
    def _to_number(token: str) -> int:
        if token.isdigit():
            return int(token)
        return NUMBER_WORDS[token]

    # ------------------------------------------------------------------
    # Follow-up resolution
    # ------------------------------------------------------------------

    def resolve_follow_up(self, query: StructuredQuery,
                          session: Optional[ConversationSession]) -> StructuredQuery:
        """
        Fill gaps in a follow-up question from the session's active state.

        Populated fields are never overwritten and the session is not
        modified. Returns the query unchanged when there is nothing to do.
        """
        if session is None or not session.history:
            return query

        if not self._is_follow_up(query, session):
            return query

        intent = query.intent
        if intent == Intent.UNKNOWN and session.active_intent not in (None, Intent.UNKNOWN):
            intent = session.active_intent

        entities = {kind: list(values) for kind, values in query.entities.items()}
        for kind in INHERITED_ENTITY_KINDS:
            if not entities.get(kind) and session.active_entities.get(kind):
                entities[kind] = list(session.active_entities[kind])

        if intent == query.intent and entities == query.entities:
            return query

        logger.info(f"Resolved follow-up query against session {session.session_id}")
        return replace(query, intent=intent, entities=entities)

    def _is_follow_up(self, query: StructuredQuery, session: ConversationSession) -> bool:
        if query.intent == Intent.UNKNOWN:
            return True
        for kind in INHERITED_ENTITY_KINDS:
            if not query.entities.get(kind) and session.active_entities.get(kind):
                return True
        return bool(FOLLOW_UP_PATTERN.search(query.original_query))
