"""
Unit tests for the InsightPipeline orchestrator.

Runs the LangGraph pipeline end to end over an in-memory DuckDB store, with
a scripted completion service that answers by prompt kind.
"""

import asyncio
import json
from datetime import date
from typing import Dict, Optional
from unittest.mock import AsyncMock, Mock

import pandas as pd
import pytest

from nycdb_insights.agents.narrative_agent import NARRATIVE_FALLBACK, NarrativeGenerator
from nycdb_insights.agents.query_interpreter import QueryInterpreter
from nycdb_insights.analysis.pattern_detector import PatternDetector
from nycdb_insights.analysis.statistical_analyzer import StatisticalAnalyzer
from nycdb_insights.core.models import Intent
from nycdb_insights.core.orchestrator import MAX_LOG_ENTRIES, InsightPipeline
from nycdb_insights.data.conversation_store import InMemoryConversationStore
from nycdb_insights.data.data_store import DataStore
from nycdb_insights.data.query_compiler import QueryCompiler
from nycdb_insights.error_handler import DataAccessError, ValidationError
from nycdb_insights.llm.llm_provider import LLMProvider, LLMResponse
from nycdb_insights.response.assembler import ResponseAssembler


NARRATIVE_TEXT = (
    "Brooklyn's oldest buildings carry the most violations.\n\n"
    "Key Findings:\n- 2 buildings are high risk\n- Both were built before 1930\n\n"
    "This is likely due to deferred maintenance."
)
RECOMMENDATION_TEXT = (
    "Recommendation: Inspect pre-war buildings first - they dominate the high-risk list\n"
    "Recommendation: Track open HPD violations monthly - counts are concentrated"
)
EXPLANATION_TEXT = "Older buildings accumulate violations as systems age."


class ScriptedLLMProvider(LLMProvider):
    """Completion service that answers by prompt kind."""

    def __init__(self, interpretations: Dict[str, dict], fail_narrative: bool = False):
        super().__init__(model="scripted-model", api_key="test-key", max_retries=1)
        self.interpretations = interpretations
        self.fail_narrative = fail_narrative
        self.prompts = []

    def generate(self, prompt: str, temperature: float = 0.7,
                 max_tokens: Optional[int] = None) -> LLMResponse:
        self.prompts.append(prompt)

        if "structured query description" in prompt:
            question = prompt.rsplit('User Query: "', 1)[1].split('"', 1)[0]
            payload = self.interpretations.get(question)
            content = json.dumps(payload) if payload is not None else "Sorry, I cannot help with that."
        elif "explain this pattern" in prompt:
            content = EXPLANATION_TEXT
        elif "actionable recommendations" in prompt:
            content = RECOMMENDATION_TEXT
        else:
            if self.fail_narrative:
                raise RuntimeError("narrative service unavailable")
            content = NARRATIVE_TEXT

        return LLMResponse(content=content, tokens_used=len(content) // 4, model=self.model)

    def count_tokens(self, text: str) -> int:
        return len(text) // 4


INTERPRETATIONS = {
    "Which buildings in Brooklyn have the highest risk?": {
        "intent": "risk_assessment", "entities": {"location": ["Brooklyn"]},
    },
    "Show me the violations for those": {
        "intent": "violation_search", "entities": {},
    },
    "Give me an overview": {
        "intent": "general_stats", "entities": {},
    },
}


@pytest.fixture
def data_store():
    store = DataStore()
    store.register_dataframe("pluto", pd.DataFrame({
        "bbl": [3001, 3002, 3003, 1001],
        "address": ["1 OLD ST", "2 OLD ST", "3 NEW ST", "9 BROADWAY"],
        "borough": ["Brooklyn", "Brooklyn", "Brooklyn", "Manhattan"],
        "block": [1, 1, 1, 5],
        "lot": [1, 2, 3, 1],
        "bldgclass": ["R4", "R4", "C1", "O4"],
        "landuse": ["01", "01", "05", "05"],
        "yearbuilt": [1899, 1925, 2015, 1910],
        "numfloors": [5.0, 6.0, 20.0, 30.0],
        "unitsres": [20, 24, 0, 0],
        "unitstotal": [20, 24, 10, 40],
        "assesstot": [1e6, 1.2e6, 9e6, 5e7],
        "exemptland": [0.0, 0.0, 0.0, 0.0],
        "exempttot": [0.0, 0.0, 0.0, 0.0],
        "zipcode": ["11201", "11201", "11201", "10004"],
    }))
    hpd_rows = [(3001, "2023-0%d-01" % (i % 9 + 1)) for i in range(20)] + \
               [(3002, "2023-0%d-15" % (i % 9 + 1)) for i in range(12)] + \
               [(1001, "2022-05-01")]
    store.register_dataframe("hpd_violations", pd.DataFrame({
        "id": list(range(1, len(hpd_rows) + 1)),
        "violationid": list(range(1001, 1001 + len(hpd_rows))),
        "bbl": [bbl for bbl, _ in hpd_rows],
        "issueddate": [issued for _, issued in hpd_rows],
        "violationstatus": ["Open"] * len(hpd_rows),
        "violationtype": ["B"] * len(hpd_rows),
        "novdescription": ["heat"] * len(hpd_rows),
    }))
    store.ensure_known_tables()
    yield store
    store.close()


def build_pipeline(llm_provider, data_store):
    store = InMemoryConversationStore()
    return InsightPipeline(
        interpreter=QueryInterpreter(llm_provider, today_provider=lambda: date(2024, 6, 1)),
        compiler=QueryCompiler(),
        data_store=data_store,
        analyzer=StatisticalAnalyzer(today_provider=lambda: date(2024, 6, 1)),
        detector=PatternDetector(),
        narrator=NarrativeGenerator(llm_provider),
        assembler=ResponseAssembler(store),
        store=store,
    )


@pytest.fixture
def llm_provider():
    return ScriptedLLMProvider(INTERPRETATIONS)


@pytest.fixture
def pipeline(llm_provider, data_store):
    return build_pipeline(llm_provider, data_store)


class TestProcessQuery:
    """Test end-to-end question processing."""

    def test_risk_assessment(self, pipeline):
        """Test a full risk assessment answer."""
        envelope = asyncio.run(pipeline.process_query(
            "Which buildings in Brooklyn have the highest risk?", owner="user-1"
        ))

        assert envelope.intent == Intent.RISK_ASSESSMENT
        assert not envelope.needs_clarification
        assert envelope.row_count == 3
        assert {row["borough"] for row in envelope.raw_data_sample} == {"Brooklyn"}
        assert envelope.raw_data_sample[0]["bbl"] == 3001
        assert envelope.narrative_text.startswith("# Building Risk Assessment")
        assert envelope.key_findings == ["2 buildings are high risk", "Both were built before 1930"]
        assert envelope.recommendations[0].startswith("Inspect pre-war buildings first")
        assert EXPLANATION_TEXT in envelope.explanations
        assert envelope.confidence_score == 0.85
        assert envelope.message_count == 1
        assert "Risk Level Distribution" in [v.title for v in envelope.visualizations]
        assert envelope.patterns is not None
        assert "geographic_concentration" in [f.kind for f in envelope.patterns.significant_patterns]
        assert any(s.text == "Compare with Manhattan" for s in envelope.refinement_suggestions)

    def test_envelope_serializes(self, pipeline):
        """Test the envelope is JSON-serializable."""
        envelope = asyncio.run(pipeline.process_query("Give me an overview"))

        payload = json.loads(json.dumps(envelope.to_dict()))

        assert payload["intent"] == "general_stats"
        assert payload["rawDataSample"][0]["total_buildings"] == 4

    def test_unknown_question_asks_for_clarification(self, pipeline, llm_provider):
        """Test that an uninterpretable question never reaches the data store."""
        pipeline.data_store = Mock()
        pipeline.data_store.execute = AsyncMock()

        envelope = asyncio.run(pipeline.process_query("What's the weather like?"))

        assert envelope.needs_clarification
        assert envelope.intent == Intent.UNKNOWN
        assert len(envelope.refinement_suggestions) == 6
        assert envelope.message_count == 1
        pipeline.data_store.execute.assert_not_called()
        assert len(llm_provider.prompts) == 1

    def test_follow_up_inherits_location(self, pipeline):
        """Test that a follow-up question reuses the active borough."""
        first = asyncio.run(pipeline.process_query(
            "Which buildings in Brooklyn have the highest risk?", owner="user-1"
        ))

        second = asyncio.run(pipeline.process_query(
            "Show me the violations for those", owner="user-1", session_id=first.session_id
        ))

        assert second.session_id == first.session_id
        assert second.intent == Intent.VIOLATION_SEARCH
        assert second.message_count == 2
        assert second.row_count == 32
        assert {row["borough"] for row in second.raw_data_sample} == {"Brooklyn"}

    def test_follow_up_switches_location(self, data_store):
        """Test a follow-up naming only a new borough keeps the risk intent."""
        provider = ScriptedLLMProvider({
            **INTERPRETATIONS,
            "What about Queens instead?": {"entities": {"location": ["Queens"]}},
        })
        pipeline = build_pipeline(provider, data_store)
        first = asyncio.run(pipeline.process_query(
            "Which buildings in Brooklyn have the highest risk?", owner="user-1"
        ))

        second = asyncio.run(pipeline.process_query(
            "What about Queens instead?", owner="user-1", session_id=first.session_id
        ))

        assert second.intent == Intent.RISK_ASSESSMENT
        assert not second.needs_clarification
        assert all(row["borough"] == "Queens" for row in second.raw_data_sample)
        summary = pipeline.get_conversation("user-1", first.session_id)
        assert summary["currentTopic"] == "risk_assessment"
        assert summary["currentEntities"] == {"location": ["Queens"]}

    def test_empty_result_still_answers(self, data_store):
        """Test a question matching no rows returns a complete envelope."""
        provider = ScriptedLLMProvider({
            "Which buildings in Brooklny have the highest risk?": {
                "intent": "risk_assessment", "entities": {"location": ["Brooklny"]},
            },
        })
        pipeline = build_pipeline(provider, data_store)

        envelope = asyncio.run(pipeline.process_query(
            "Which buildings in Brooklny have the highest risk?", owner="user-1"
        ))

        assert envelope.intent == Intent.RISK_ASSESSMENT
        assert envelope.row_count == 0
        assert envelope.raw_data_sample == []
        assert envelope.basic_stats["record_count"] == 0
        assert envelope.visualizations == []
        assert envelope.narrative_text.strip()
        assert envelope.message_count == 1

    def test_unknown_session_starts_new_conversation(self, pipeline):
        """Test an unknown conversation id starts a new session."""
        envelope = asyncio.run(pipeline.process_query("Give me an overview", session_id="conv_missing"))

        assert envelope.session_id != "conv_missing"
        assert envelope.message_count == 1

    def test_blank_query_rejected(self, pipeline):
        """Test that blank questions fail validation."""
        with pytest.raises(ValidationError) as exc_info:
            asyncio.run(pipeline.process_query("   "))

        assert exc_info.value.field == "query"

    def test_data_access_error_propagates(self, pipeline):
        """Test that data store failures abort the run without recording a turn."""
        pipeline.data_store = Mock()
        pipeline.data_store.execute = AsyncMock(side_effect=DataAccessError(Intent.RISK_ASSESSMENT))

        with pytest.raises(DataAccessError):
            asyncio.run(pipeline.process_query(
                "Which buildings in Brooklyn have the highest risk?", owner="user-1"
            ))

        sessions = pipeline.store.list_for_owner("user-1")
        assert [s.message_count for s in sessions] == [0]

    def test_narrative_failure_degrades(self, data_store):
        """Test that a failing narrative still produces a response."""
        provider = ScriptedLLMProvider(INTERPRETATIONS, fail_narrative=True)
        pipeline = build_pipeline(provider, data_store)

        envelope = asyncio.run(pipeline.process_query("Give me an overview"))

        assert NARRATIVE_FALLBACK in envelope.narrative_text
        assert envelope.confidence_score == 0.0
        assert envelope.recommendations
        assert envelope.message_count == 1


class TestConversations:
    """Test conversation listing."""

    def test_list_and_get(self, pipeline):
        """Test summaries are scoped to their owner."""
        envelope = asyncio.run(pipeline.process_query(
            "Which buildings in Brooklyn have the highest risk?", owner="user-1"
        ))

        conversations = pipeline.list_conversations("user-1")
        assert len(conversations) == 1
        assert conversations[0]["conversationId"] == envelope.session_id
        assert conversations[0]["currentTopic"] == "risk_assessment"
        assert conversations[0]["currentEntities"] == {"location": ["Brooklyn"]}

        assert pipeline.get_conversation("user-1", envelope.session_id)["messageCount"] == 1
        assert pipeline.get_conversation("user-2", envelope.session_id) is None
        assert pipeline.list_conversations("user-2") == []


class TestCommunicationLog:
    """Test the stage communication log."""

    def test_log_records_stages(self, pipeline):
        """Test each stage logs its hand-off."""
        asyncio.run(pipeline.process_query("Give me an overview"))

        senders = {entry["sender"] for entry in pipeline.get_communication_log()}

        assert {"QueryInterpreter", "QueryCompiler", "DataStore", "StatisticalAnalyzer",
                "PatternDetector", "NarrativeGenerator", "ResponseAssembler"} <= senders

    def test_log_is_bounded(self, pipeline):
        """Test that the log keeps only the newest entries."""
        for i in range(MAX_LOG_ENTRIES + 10):
            pipeline._log_communication("A", "B", f"message {i}")

        log = pipeline.get_communication_log()
        assert len(log) == MAX_LOG_ENTRIES
        assert log[-1]["message"] == f"message {MAX_LOG_ENTRIES + 9}"

    def test_clear(self, pipeline):
        """Test clearing the log."""
        pipeline._log_communication("A", "B", "hello")
        pipeline.clear_communication_log()

        assert pipeline.get_communication_log() == []
