"""
Response assembly.

Combines narrative, recommendations, charts and refinement suggestions into
the ResponseEnvelope returned to clients, and commits the turn to the
conversation store before returning.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from nycdb_insights.agents.query_interpreter import NYC_BOROUGHS
from nycdb_insights.core.models import (
    AnalysisResult,
    ConversationSession,
    Intent,
    NarrativeResult,
    PatternExplanation,
    PatternReport,
    RefinementSuggestion,
    ResponseEnvelope,
    StructuredQuery,
    Visualization,
)
from nycdb_insights.data.conversation_store import SessionStore
from nycdb_insights.error_handler import EXAMPLE_QUERIES, ErrorHandler, ErrorType
from nycdb_insights.response.visualization import VisualizationGenerator

logger = logging.getLogger(__name__)


RESPONSE_TITLES = {
    Intent.RISK_ASSESSMENT: "Building Risk Assessment",
    Intent.TREND_ANALYSIS: "Trend Analysis",
    Intent.VIOLATION_SEARCH: "Violation Analysis",
    Intent.BUILDING_LOOKUP: "Building Lookup",
    Intent.COMPARISON: "Comparison Analysis",
    Intent.GENERAL_STATS: "NYC Building Statistics",
}

INTENT_SUGGESTIONS = {
    Intent.RISK_ASSESSMENT: ("What factors contribute to these risks?",
                             "What factors contribute to these building risks?"),
    Intent.TREND_ANALYSIS: ("What might explain these trends?",
                            "What might explain these trends?"),
    Intent.VIOLATION_SEARCH: ("Which buildings have the most violations?",
                              "Which buildings have the most violations?"),
}

RAW_SAMPLE_SIZE = 10


class ResponseAssembler:
    """Builds response envelopes and records each turn in the session store."""

    def __init__(self, store: SessionStore,
                 visualization_generator: Optional[VisualizationGenerator] = None,
                 error_handler: Optional[ErrorHandler] = None):
        """
        Initialize the assembler.

        Args:
            store: Session store the turn is committed to
            visualization_generator: Chart builder (optional)
            error_handler: Source of clarification messages (optional)
        """
        self.store = store
        self.visualization_generator = visualization_generator or VisualizationGenerator()
        self.error_handler = error_handler or ErrorHandler()

    def assemble(
        self,
        query: StructuredQuery,
        rows: List[Dict[str, Any]],
        analysis: AnalysisResult,
        patterns: Optional[PatternReport],
        narrative: NarrativeResult,
        recommendations: List[str],
        session: ConversationSession,
        explanation: Optional[PatternExplanation] = None,
    ) -> ResponseEnvelope:
        """
        Assemble the response for an answered question and commit the turn.

        Args:
            query: Structured query that was answered
            rows: Result rows
            analysis: Analysis result
            patterns: Detected patterns
            narrative: Generated narrative
            recommendations: Generated recommendations
            session: Conversation session the turn belongs to
            explanation: Explanation of the top finding (optional)

        Returns:
            ResponseEnvelope with message_count reflecting the committed turn
        """
        response_id = f"resp_{uuid.uuid4().hex}"
        charts = self.visualization_generator.generate(analysis)

        key_findings = list(narrative.key_findings)
        if not key_findings and patterns is not None:
            key_findings = [finding.description for finding in patterns.all_findings()]

        explanations = list(narrative.explanations)
        if explanation is not None and explanation.confidence > 0:
            explanations.append(explanation.explanation)

        text = self.build_narrative_text(
            query, len(rows), narrative.summary, key_findings, explanations, recommendations
        )

        suggestions = self.refinement_suggestions(query, len(rows), charts)

        self.store.record(session, query, response_id)

        envelope = ResponseEnvelope(
            response_id=response_id,
            narrative_text=text,
            session_id=session.session_id,
            intent=query.intent,
            original_query=query.original_query,
            key_findings=key_findings,
            explanations=explanations,
            recommendations=list(recommendations),
            visualizations=charts,
            raw_data_sample=rows[:RAW_SAMPLE_SIZE],
            refinement_suggestions=suggestions,
            patterns=patterns,
            basic_stats=analysis.basic_stats,
            row_count=len(rows),
            message_count=session.message_count,
            confidence_score=narrative.confidence,
        )
        logger.info(
            f"Assembled response {response_id} with {len(charts)} chart(s) "
            f"and {len(suggestions)} suggestion(s)"
        )
        return envelope

    def assemble_clarification(self, query: StructuredQuery,
                               session: ConversationSession) -> ResponseEnvelope:
        """
        Assemble a clarification request for a question that could not be interpreted.

        The turn is recorded so the conversation history stays complete.
        """
        response_id = f"resp_{uuid.uuid4().hex}"
        message = self.error_handler.clarification_message(query.original_query)
        suggestions = [
            RefinementSuggestion(text=example, query=example)
            for example in self.error_handler.suggest_alternatives(
                query.original_query, ErrorType.AMBIGUOUS_QUERY
            )
        ]

        self.store.record(session, query, response_id)

        logger.info(f"Assembled clarification request {response_id}")
        return ResponseEnvelope(
            response_id=response_id,
            narrative_text=message,
            session_id=session.session_id,
            intent=query.intent,
            original_query=query.original_query,
            refinement_suggestions=suggestions,
            message_count=session.message_count,
            needs_clarification=True,
        )

    @staticmethod
    def build_narrative_text(query: StructuredQuery, row_count: int, summary: str,
                             key_findings: List[str], explanations: List[str],
                             recommendations: List[str]) -> str:
        """Render the markdown narrative; every section falls back to text when empty."""
        title = RESPONSE_TITLES.get(query.intent, "Query Results")
        parts = [f"# {title}", "## Summary", summary or f"Found {row_count} matching records."]

        parts.append("## Key Findings")
        if key_findings:
            parts.append("\n".join(f"- {finding}" for finding in key_findings))
        elif row_count:
            parts.append(f"- Found {row_count} matching records.")
        else:
            parts.append("- No matching records were found.")

        if explanations:
            parts.append("## Explanations")
            parts.append("\n".join(f"- {explanation}" for explanation in explanations))

        if recommendations:
            parts.append("## Recommendations")
            parts.append("\n".join(f"{i}. {rec}" for i, rec in enumerate(recommendations, 1)))

        return "\n\n".join(parts) + "\n"

    @staticmethod
    def refinement_suggestions(query: StructuredQuery, row_count: int,
                               charts: List[Visualization]) -> List[RefinementSuggestion]:
        """Suggest follow-up questions for the response."""
        original = query.original_query
        suggestions = [RefinementSuggestion(
            text="Tell me more details about this",
            query=f"Tell me more details about {original}",
        )]

        if row_count > 10:
            suggestions.append(RefinementSuggestion(
                text="Show me only the top results",
                query=f"Show me only the top results from {original}",
            ))

        if not charts:
            suggestions.append(RefinementSuggestion(
                text="Can you visualize this data?",
                query=f"Visualize the data from {original}",
            ))

        if query.intent in INTENT_SUGGESTIONS:
            text, follow_up = INTENT_SUGGESTIONS[query.intent]
            suggestions.append(RefinementSuggestion(text=text, query=follow_up))

        locations = query.entity_values("location")
        recognized = [loc.value for loc in locations if loc.recognized]
        if recognized:
            current = str(recognized[0]).lower()
            others = [b.title() for b in NYC_BOROUGHS if b != current]
            suggestions.append(RefinementSuggestion(
                text=f"Compare with {others[0]}",
                query=f"Compare {original} with {others[0]}",
            ))

        for location in locations:
            if not location.recognized:
                suggestions.append(RefinementSuggestion(
                    text=f"Check the spelling of '{location.raw}'",
                    query=EXAMPLE_QUERIES.get(query.intent.value, original),
                ))

        return suggestions
