"""Narrative Agent module for turning analysis results into prose.

This module implements the NarrativeGenerator responsible for narrative
insights, recommendations and single-pattern explanations. Each operation
makes one completion call and falls back to a fixed result when the call
fails or comes back empty.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from nycdb_insights.core.models import (
    AnalysisResult,
    NarrativeResult,
    PatternExplanation,
    PatternFinding,
    PatternReport,
    StructuredQuery,
)
from nycdb_insights.error_handler import NarrativeGenerationFailure
from nycdb_insights.llm.llm_provider import LLMProvider
from nycdb_insights.llm.prompt_templates import PromptTemplates
from nycdb_insights.llm.response_parser import LLMResponseValidator, NarrativeParser

logger = logging.getLogger(__name__)


# Uncalibrated placeholders: fixed values reported on success, not model-derived
NARRATIVE_CONFIDENCE = 0.85
EXPLANATION_CONFIDENCE = 0.8

# Smallest analysis excerpt a prompt is shrunk to when fitting the token limit
MIN_CHAR_BUDGET = 200

NARRATIVE_FALLBACK = "Unable to generate insights due to an error."
EXPLANATION_FALLBACK = (
    "Unable to generate an explanation for this pattern due to an error. "
    "Please review the supporting data directly."
)


class NarrativeGenerator:
    """
    Agent responsible for narrative insights and recommendations.

    This agent:
    - Generates a narrative summary with key findings and explanations
    - Generates actionable recommendations
    - Explains a single detected pattern
    """

    def __init__(self, llm_provider: LLMProvider, char_budget: int = 1500,
                 max_prompt_tokens: int = 2000):
        """
        Initialize the NarrativeGenerator.

        Args:
            llm_provider: LLM provider for narrative generation
            char_budget: Maximum characters of analysis JSON embedded in a prompt
            max_prompt_tokens: Token limit a finished prompt must fit in
        """
        self.llm_provider = llm_provider
        self.char_budget = char_budget
        self.max_prompt_tokens = max_prompt_tokens
        logger.info(
            f"NarrativeGenerator initialized with char_budget={char_budget}, "
            f"max_prompt_tokens={max_prompt_tokens}"
        )

    async def narrate(self, query: StructuredQuery, analysis: AnalysisResult,
                      patterns: Optional[PatternReport] = None) -> NarrativeResult:
        """
        Generate narrative insights for an analysis.

        Args:
            query: Structured query being answered
            analysis: Analysis result
            patterns: Detected patterns (optional)

        Returns:
            NarrativeResult; the fallback result when generation fails
        """
        analysis_data = analysis.to_dict()
        pattern_data = patterns.to_dict() if patterns else None

        try:
            prompt = await self._fit_prompt(lambda budget: PromptTemplates.format_narrative_prompt(
                query=query.original_query,
                intent=query.intent.value,
                analysis=analysis_data,
                patterns=pattern_data,
                budget=budget,
            ))
            text = await self._complete(prompt, temperature=0.7, max_tokens=800)
        except NarrativeGenerationFailure as e:
            logger.error(f"Narrative generation failed: {e}")
            return NarrativeResult(summary=NARRATIVE_FALLBACK, confidence=0.0)

        return NarrativeResult(
            summary=text.strip(),
            key_findings=NarrativeParser.extract_key_findings(text),
            explanations=NarrativeParser.extract_explanations(text),
            confidence=NARRATIVE_CONFIDENCE,
        )

    async def recommend(self, query: StructuredQuery, analysis: AnalysisResult,
                        patterns: Optional[PatternReport] = None) -> List[str]:
        """
        Generate actionable recommendations for an analysis.

        Returns:
            Recommendation strings; empty when generation fails
        """
        analysis_data = analysis.to_dict()
        pattern_data = patterns.to_dict() if patterns else None

        try:
            prompt = await self._fit_prompt(lambda budget: PromptTemplates.format_recommendation_prompt(
                query=query.original_query,
                intent=query.intent.value,
                analysis=analysis_data,
                patterns=pattern_data,
                budget=budget,
            ))
            text = await self._complete(prompt, temperature=0.6, max_tokens=600)
        except NarrativeGenerationFailure as e:
            logger.error(f"Recommendation generation failed: {e}")
            return []

        return NarrativeParser.extract_recommendations(text)

    async def explain_pattern(self, analysis: AnalysisResult,
                              pattern: PatternFinding) -> PatternExplanation:
        """
        Explain a single detected pattern.

        Args:
            analysis: Analysis result the pattern was found in
            pattern: The finding to explain

        Returns:
            PatternExplanation; the fallback explanation when generation fails
        """
        analysis_data = analysis.to_dict()

        try:
            prompt = await self._fit_prompt(lambda budget: PromptTemplates.format_explanation_prompt(
                pattern=pattern.description,
                analysis=analysis_data,
                budget=budget,
            ))
            text = await self._complete(prompt, temperature=0.5, max_tokens=500)
        except NarrativeGenerationFailure as e:
            logger.error(f"Pattern explanation failed: {e}")
            return PatternExplanation(pattern=pattern.description, explanation=EXPLANATION_FALLBACK)

        return PatternExplanation(
            pattern=pattern.description,
            explanation=text.strip(),
            confidence=EXPLANATION_CONFIDENCE,
        )

    async def _fit_prompt(self, build: Callable[[int], str]) -> str:
        """
        Build a prompt whose token count fits max_prompt_tokens.

        The analysis excerpt is halved until the prompt fits or the excerpt
        reaches MIN_CHAR_BUDGET; the last prompt built is used either way.
        """
        budget = self.char_budget
        prompt = build(budget)
        tokens = await self._count_tokens(prompt)

        while tokens > self.max_prompt_tokens and budget > MIN_CHAR_BUDGET:
            budget = max(budget // 2, MIN_CHAR_BUDGET)
            prompt = build(budget)
            tokens = await self._count_tokens(prompt)

        if tokens > self.max_prompt_tokens:
            logger.warning(f"Prompt uses {tokens} tokens, over the {self.max_prompt_tokens} token limit")
        return prompt

    async def _count_tokens(self, prompt: str) -> int:
        try:
            return await asyncio.to_thread(self.llm_provider.count_tokens, prompt)
        except Exception as e:
            raise NarrativeGenerationFailure(
                f"Token counting failed: {e.__class__.__name__}"
            ) from e

    async def _complete(self, prompt: str, temperature: float, max_tokens: int) -> str:
        try:
            response = await self.llm_provider.agenerate(
                prompt=prompt,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except Exception as e:
            raise NarrativeGenerationFailure(
                f"Completion service failed: {e.__class__.__name__}"
            ) from e

        if not LLMResponseValidator.is_non_empty(response.content):
            raise NarrativeGenerationFailure("Completion service returned an empty response")
        return response.content
