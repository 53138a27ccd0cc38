"""
Unit tests for NarrativeGenerator.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from nycdb_insights.agents.narrative_agent import (
    EXPLANATION_CONFIDENCE,
    EXPLANATION_FALLBACK,
    MIN_CHAR_BUDGET,
    NARRATIVE_CONFIDENCE,
    NARRATIVE_FALLBACK,
    NarrativeGenerator,
)
from nycdb_insights.core.models import (
    AnalysisResult,
    Importance,
    Intent,
    PatternFinding,
    PatternReport,
    StructuredQuery,
)
from nycdb_insights.llm.llm_provider import LLMResponse


NARRATIVE_TEXT = """Brooklyn holds most of the high-risk buildings.

Key Findings:
- 67% of high-risk buildings are in Brooklyn
- Most were built before 1900

The concentration is likely due to the age of the housing stock."""


def completion(content):
    return LLMResponse(content=content, tokens_used=120, model="mock-model")


@pytest.fixture
def mock_llm_provider():
    """Create a mock LLM provider."""
    provider = Mock()
    provider.agenerate = AsyncMock()
    provider.count_tokens.side_effect = lambda text: len(text) // 4
    return provider


@pytest.fixture
def generator(mock_llm_provider):
    return NarrativeGenerator(mock_llm_provider, char_budget=500)


@pytest.fixture
def query():
    return StructuredQuery(intent=Intent.RISK_ASSESSMENT, original_query="Which buildings are riskiest?")


@pytest.fixture
def analysis():
    return AnalysisResult(
        intent=Intent.RISK_ASSESSMENT,
        details={"risk_stats": {"total_buildings": 3, "high_risk_count": 2}},
    )


@pytest.fixture
def finding():
    return PatternFinding(
        kind="geographic_concentration",
        description="66.7% of high-risk buildings are located in Brooklyn",
        importance=Importance.HIGH,
    )


class TestNarrate:
    """Test narrative generation."""

    def test_success(self, generator, mock_llm_provider, query, analysis, finding):
        """Test the summary, parsed sections and confidence."""
        mock_llm_provider.agenerate.return_value = completion(NARRATIVE_TEXT + "\n")

        result = asyncio.run(generator.narrate(query, analysis, PatternReport(significant_patterns=[finding])))

        assert result.summary == NARRATIVE_TEXT
        assert result.key_findings == [
            "67% of high-risk buildings are in Brooklyn",
            "Most were built before 1900",
        ]
        assert result.explanations == ["due to the age of the housing stock"]
        assert result.confidence == NARRATIVE_CONFIDENCE

        _, kwargs = mock_llm_provider.agenerate.call_args
        assert kwargs["temperature"] == 0.7
        assert kwargs["max_tokens"] == 800
        assert "Which buildings are riskiest?" in kwargs["prompt"]
        assert "Detected Patterns:" in kwargs["prompt"]

    def test_service_failure_falls_back(self, generator, mock_llm_provider, query, analysis):
        """Test that a failing service yields the fallback narrative."""
        mock_llm_provider.agenerate.side_effect = TimeoutError("slow")

        result = asyncio.run(generator.narrate(query, analysis))

        assert result.summary == NARRATIVE_FALLBACK
        assert result.confidence == 0.0
        assert result.key_findings == []

    def test_empty_completion_falls_back(self, generator, mock_llm_provider, query, analysis):
        """Test that whitespace-only text yields the fallback narrative."""
        mock_llm_provider.agenerate.return_value = completion("   ")

        result = asyncio.run(generator.narrate(query, analysis))

        assert result.summary == NARRATIVE_FALLBACK
        assert result.confidence == 0.0


class TestRecommend:
    """Test recommendation generation."""

    def test_success(self, generator, mock_llm_provider, query, analysis):
        """Test recommendation lines are extracted."""
        mock_llm_provider.agenerate.return_value = completion(
            "Recommendation: Inspect Brooklyn walk-ups - they carry most risk\n"
            "Recommendation: Fund facade repairs - older buildings dominate"
        )

        recommendations = asyncio.run(generator.recommend(query, analysis))

        assert recommendations == [
            "Inspect Brooklyn walk-ups - they carry most risk",
            "Fund facade repairs - older buildings dominate",
        ]
        _, kwargs = mock_llm_provider.agenerate.call_args
        assert kwargs["temperature"] == 0.6
        assert kwargs["max_tokens"] == 600

    def test_failure_returns_empty(self, generator, mock_llm_provider, query, analysis):
        """Test that failures yield no recommendations."""
        mock_llm_provider.agenerate.side_effect = RuntimeError("down")

        assert asyncio.run(generator.recommend(query, analysis)) == []


class TestExplainPattern:
    """Test single-pattern explanations."""

    def test_success(self, generator, mock_llm_provider, analysis, finding):
        """Test the explanation text and confidence."""
        mock_llm_provider.agenerate.return_value = completion("  Pre-war stock is concentrated there.  ")

        explanation = asyncio.run(generator.explain_pattern(analysis, finding))

        assert explanation.pattern == finding.description
        assert explanation.explanation == "Pre-war stock is concentrated there."
        assert explanation.confidence == EXPLANATION_CONFIDENCE
        _, kwargs = mock_llm_provider.agenerate.call_args
        assert kwargs["temperature"] == 0.5
        assert kwargs["max_tokens"] == 500
        assert finding.description in kwargs["prompt"]

    def test_failure_falls_back(self, generator, mock_llm_provider, analysis, finding):
        """Test the fallback explanation has zero confidence."""
        mock_llm_provider.agenerate.return_value = completion("")

        explanation = asyncio.run(generator.explain_pattern(analysis, finding))

        assert explanation.explanation == EXPLANATION_FALLBACK
        assert explanation.confidence == 0.0


class TestPromptBudget:
    """Test the analysis excerpt budget."""

    def test_large_analysis_truncated(self, generator, mock_llm_provider, query):
        """Test that a large analysis is cut to the character budget."""
        mock_llm_provider.agenerate.return_value = completion("ok")
        big = AnalysisResult(
            intent=Intent.RISK_ASSESSMENT,
            details={"scored_buildings": [{"bbl": i, "address": "X" * 40} for i in range(200)]},
        )

        asyncio.run(generator.narrate(query, big))

        _, kwargs = mock_llm_provider.agenerate.call_args
        assert kwargs["prompt"].count("X" * 40) < 20

    def test_prompt_within_token_limit_counted_once(self, generator, mock_llm_provider, query, analysis):
        """Test that a prompt under the token limit is built once."""
        mock_llm_provider.agenerate.return_value = completion("ok")

        asyncio.run(generator.narrate(query, analysis))

        assert mock_llm_provider.count_tokens.call_count == 1
        _, kwargs = mock_llm_provider.agenerate.call_args
        assert kwargs["prompt"] == mock_llm_provider.count_tokens.call_args[0][0]

    def test_prompt_shrunk_to_token_limit(self, mock_llm_provider, query):
        """Test that the excerpt is halved until the prompt fits the token limit."""
        mock_llm_provider.agenerate.return_value = completion("ok")
        generator = NarrativeGenerator(mock_llm_provider, char_budget=1600, max_prompt_tokens=1)
        big = AnalysisResult(
            intent=Intent.RISK_ASSESSMENT,
            details={"scored_buildings": [{"bbl": i, "address": "X" * 40} for i in range(200)]},
        )

        asyncio.run(generator.recommend(query, big))

        counted = [c[0][0] for c in mock_llm_provider.count_tokens.call_args_list]
        # 1600, 800, 400, then the floor of 200
        assert len(counted) == 4
        assert len(counted[-1]) < len(counted[0])
        assert counted[-1].count("X" * 40) <= MIN_CHAR_BUDGET // 40
        _, kwargs = mock_llm_provider.agenerate.call_args
        assert kwargs["prompt"] == counted[-1]

    def test_token_count_failure_falls_back(self, generator, mock_llm_provider, query, analysis):
        """Test that a failing token count yields the fallback narrative without a completion call."""
        mock_llm_provider.count_tokens.side_effect = RuntimeError("tokenizer unavailable")

        result = asyncio.run(generator.narrate(query, analysis))

        assert result.summary == NARRATIVE_FALLBACK
        mock_llm_provider.agenerate.assert_not_awaited()
