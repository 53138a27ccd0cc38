"""
Structured prompt templates for LLM interactions.

This module provides prompt templates for question interpretation, narrative
insights, recommendations and pattern explanations over NYC building data.
"""

import json
from typing import Any, Dict, List, Optional


class PromptTemplates:
    """Collection of structured prompt templates."""

    # Interpretation prompt with few-shot examples
    INTERPRETATION_PROMPT = """You are an analyst of NYC Department of Buildings, HPD and PLUTO data. Convert the user's question into a structured query description.

Query types:
- risk_assessment: which buildings are most at risk (age, violations)
- trend_analysis: how counts of permits or violations change over time
- violation_search: find specific violations
- building_lookup: find buildings matching attributes
- comparison: compare boroughs, building classes or other groups
- general_stats: overall statistics

Entities:
- location: NYC boroughs or neighborhoods
- building_type: residential, commercial, mixed use
- time_period: phrases such as "last year" or "past five years"
- violation_type: kinds of violations (e.g. "HPD", "elevator", "heat")

Filters use the tables pluto, hpd_violations, dob_violations, dob_permits and
one of the operators "=", "LIKE", "BETWEEN" (BETWEEN takes [start, end]).
{context}
Few-shot Examples:

Example 1:
User Query: "Which buildings in Brooklyn have the highest risk?"
Output:
{{
  "intent": "risk_assessment",
  "entities": {{"location": ["Brooklyn"]}},
  "filters": [],
  "aggregations": [],
  "sort_order": null,
  "limit": 100
}}

Example 2:
User Query: "How have HPD violations in Queens changed over the past five years?"
Output:
{{
  "intent": "trend_analysis",
  "entities": {{"location": ["Queens"], "time_period": ["past five years"], "violation_type": ["HPD"]}},
  "filters": [],
  "aggregations": [],
  "sort_order": null,
  "limit": 100
}}

Example 3:
User Query: "Show me 20 residential buildings in Manhattan built before 1900, newest first"
Output:
{{
  "intent": "building_lookup",
  "entities": {{"location": ["Manhattan"], "building_type": ["residential"]}},
  "filters": [{{"table": "pluto", "column": "yearbuilt", "operator": "BETWEEN", "value": [1, 1899]}}],
  "aggregations": [],
  "sort_order": "yearbuilt DESC",
  "limit": 20
}}

Example 4:
User Query: "Compare boroughs by number of violations"
Output:
{{
  "intent": "comparison",
  "entities": {{}},
  "filters": [],
  "aggregations": [{{"group_by": "borough"}}],
  "sort_order": null,
  "limit": 100
}}

User Query: "{query}"

Return ONLY valid JSON in the format shown above.

Output:"""

    NARRATIVE_PROMPT = """You are an expert analyst of NYC Department of Buildings data. Write clear insights about the analysis below.

User Query: "{query}"

Query Type: {intent}

Analysis Results: {analysis}
{patterns}
Instructions:
1. Start with a short overview that answers the question
2. Add a "Key Findings:" section with one finding per line, each starting with "- "
3. Explain the likely causes of important findings (use words like "because" or "due to")
4. Reference specific numbers from the analysis
5. Keep it under 300 words and avoid speculation beyond the data

Insights:"""

    RECOMMENDATION_PROMPT = """You are an expert analyst of NYC Department of Buildings data. Based on the following query and analysis results, provide actionable recommendations.

User Query: "{query}"

Query Type: {intent}

Analysis Results: {analysis}
{patterns}
Provide 3-5 specific, actionable recommendations. Each recommendation should be directly related to the data, practical, and include a brief rationale.

Format each recommendation on its own line as: "Recommendation: [action] - [brief rationale]"
"""

    EXPLANATION_PROMPT = """You are an expert analyst of NYC Department of Buildings data. Based on the following analysis results, explain this pattern or anomaly:

Pattern to explain: "{pattern}"

Analysis Results: {analysis}

Provide a concise explanation covering possible causes, contributing factors and potential implications. Stay within what the data supports.

Explanation:"""

    @staticmethod
    def format_interpretation_prompt(query: str,
                                     history: Optional[List[Dict[str, Any]]] = None) -> str:
        """
        Format interpretation prompt.

        Args:
            query: User's natural language question
            history: Earlier turns of the conversation (only the last two are embedded)

        Returns:
            Formatted prompt string
        """
        context = ""
        if history:
            context = (
                "\nThis is a follow-up to a previous conversation. Previous context: "
                + json.dumps(history[-2:], default=str)
                + "\n"
            )

        return PromptTemplates.INTERPRETATION_PROMPT.format(
            context=context,
            query=query
        )

    @staticmethod
    def format_narrative_prompt(query: str, intent: str, analysis: Dict[str, Any],
                                patterns: Optional[Dict[str, Any]] = None,
                                budget: int = 1500) -> str:
        """Format narrative prompt with a truncated analysis excerpt."""
        return PromptTemplates.NARRATIVE_PROMPT.format(
            query=query,
            intent=intent,
            analysis=PromptTemplates.truncate_analysis(analysis, budget),
            patterns=PromptTemplates._format_patterns(patterns, budget)
        )

    @staticmethod
    def format_recommendation_prompt(query: str, intent: str, analysis: Dict[str, Any],
                                     patterns: Optional[Dict[str, Any]] = None,
                                     budget: int = 1500) -> str:
        """Format recommendation prompt with a truncated analysis excerpt."""
        return PromptTemplates.RECOMMENDATION_PROMPT.format(
            query=query,
            intent=intent,
            analysis=PromptTemplates.truncate_analysis(analysis, budget),
            patterns=PromptTemplates._format_patterns(patterns, budget)
        )

    @staticmethod
    def format_explanation_prompt(pattern: str, analysis: Dict[str, Any],
                                  budget: int = 1500) -> str:
        """Format pattern explanation prompt."""
        return PromptTemplates.EXPLANATION_PROMPT.format(
            pattern=pattern,
            analysis=PromptTemplates.truncate_analysis(analysis, budget)
        )

    @staticmethod
    def truncate_analysis(data: Any, budget: int = 1500) -> str:
        """Serialize data as indented JSON and cut it to the character budget."""
        return json.dumps(data, indent=2, default=str)[:budget]

    # Helper methods for formatting

    @staticmethod
    def _format_patterns(patterns: Optional[Dict[str, Any]], budget: int) -> str:
        """Format detected patterns as an optional prompt section."""
        if not patterns:
            return ""
        return "\nDetected Patterns: " + PromptTemplates.truncate_analysis(patterns, budget) + "\n"
