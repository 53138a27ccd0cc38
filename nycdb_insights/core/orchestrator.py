"""
Orchestrator module using LangGraph for pipeline coordination.

This module implements the InsightPipeline using LangGraph's StateGraph to
coordinate the QueryInterpreter, QueryCompiler, DataStore, StatisticalAnalyzer,
PatternDetector, NarrativeGenerator and ResponseAssembler.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, TypedDict

from langgraph.graph import StateGraph, END

from nycdb_insights.agents.narrative_agent import NarrativeGenerator
from nycdb_insights.agents.query_interpreter import QueryInterpreter
from nycdb_insights.analysis.pattern_detector import PatternDetector, top_finding
from nycdb_insights.analysis.statistical_analyzer import StatisticalAnalyzer
from nycdb_insights.core.models import (
    AnalysisResult,
    CompiledQuery,
    ConversationSession,
    NarrativeResult,
    PatternExplanation,
    PatternReport,
    QueryResult,
    ResponseEnvelope,
    StructuredQuery,
)
from nycdb_insights.data.conversation_store import SessionStore
from nycdb_insights.data.data_store import DataStore
from nycdb_insights.data.query_compiler import QueryCompiler
from nycdb_insights.error_handler import ErrorHandler, ValidationError
from nycdb_insights.response.assembler import ResponseAssembler

logger = logging.getLogger(__name__)


ANONYMOUS_OWNER = "anonymous"
MAX_LOG_ENTRIES = 500


# ---------------------------------------------------------------------------
# LangGraph state definition
# ---------------------------------------------------------------------------

class PipelineState(TypedDict, total=False):
    """Shared state flowing through the LangGraph pipeline."""
    user_query: str
    owner: str
    session_id: Optional[str]
    session: ConversationSession
    structured_query: StructuredQuery
    compiled_query: CompiledQuery
    query_result: QueryResult
    analysis: AnalysisResult
    patterns: PatternReport
    narrative: NarrativeResult
    recommendations: List[str]
    explanation: Optional[PatternExplanation]
    response: ResponseEnvelope
    start_time: float


class InsightPipeline:
    """
    InsightPipeline coordinates the pipeline stages via a LangGraph StateGraph.

    The graph has the following nodes:
        interpret ─┬─ unknown intent → clarify → END
                   └─ compile → execute → analyze → detect → generate_insights → assemble → END

    A DataAccessError raised by the execute node aborts the run and is
    propagated to the caller. Every other stage degrades to a fallback.
    """

    def __init__(
        self,
        interpreter: QueryInterpreter,
        compiler: QueryCompiler,
        data_store: DataStore,
        analyzer: StatisticalAnalyzer,
        detector: PatternDetector,
        narrator: NarrativeGenerator,
        assembler: ResponseAssembler,
        store: SessionStore,
        error_handler: Optional[ErrorHandler] = None,
    ):
        self.interpreter = interpreter
        self.compiler = compiler
        self.data_store = data_store
        self.analyzer = analyzer
        self.detector = detector
        self.narrator = narrator
        self.assembler = assembler
        self.store = store
        self.error_handler = error_handler or ErrorHandler()

        # Communication log for debugging and monitoring
        self.communication_log: List[dict] = []

        # Build the LangGraph workflow once
        self._graph = self._build_graph()

        logger.info("InsightPipeline initialized with LangGraph")

    # ------------------------------------------------------------------
    # LangGraph construction
    # ------------------------------------------------------------------

    def _build_graph(self):
        """Build and compile the LangGraph StateGraph."""
        graph = StateGraph(PipelineState)

        graph.add_node("interpret", self._node_interpret)
        graph.add_node("clarify", self._node_clarify)
        graph.add_node("compile", self._node_compile)
        graph.add_node("execute", self._node_execute)
        graph.add_node("analyze", self._node_analyze)
        graph.add_node("detect", self._node_detect)
        graph.add_node("generate_insights", self._node_generate_insights)
        graph.add_node("assemble", self._node_assemble)

        graph.set_entry_point("interpret")
        graph.add_conditional_edges(
            "interpret",
            self._route_after_interpretation,
            {"clarify": "clarify", "compile": "compile"},
        )
        graph.add_edge("compile", "execute")
        graph.add_edge("execute", "analyze")
        graph.add_edge("analyze", "detect")
        graph.add_edge("detect", "generate_insights")
        graph.add_edge("generate_insights", "assemble")
        graph.add_edge("clarify", END)
        graph.add_edge("assemble", END)

        return graph.compile()

    @staticmethod
    def _route_after_interpretation(state: PipelineState) -> str:
        """Questions without a usable intent go to clarification."""
        if state["structured_query"].needs_clarification:
            return "clarify"
        return "compile"

    # ------------------------------------------------------------------
    # Graph node implementations
    # ------------------------------------------------------------------

    async def _node_interpret(self, state: PipelineState) -> dict:
        """Node: resolve the session and interpret the question."""
        session = self.store.get_or_create(state["owner"], state.get("session_id"))

        self._log_communication("Pipeline", "QueryInterpreter", f"Interpret: {state['user_query']}")
        structured_query = await self.interpreter.interpret(state["user_query"], session)
        self._log_communication(
            "QueryInterpreter", "Pipeline",
            f"Intent: {structured_query.intent.value}, "
            f"entities: {sorted(structured_query.entities)}"
        )
        return {"session": session, "structured_query": structured_query}

    async def _node_clarify(self, state: PipelineState) -> dict:
        """Node: ask the user to rephrase."""
        self._log_communication("Pipeline", "ResponseAssembler", "Request clarification")
        response = self.assembler.assemble_clarification(state["structured_query"], state["session"])
        return {"response": response}

    async def _node_compile(self, state: PipelineState) -> dict:
        """Node: compile the structured query to parameterized SQL."""
        compiled = self.compiler.compile(state["structured_query"])
        self._log_communication(
            "QueryCompiler", "Pipeline",
            f"Compiled {compiled.intent.value} query over {compiled.tables} "
            f"with {len(compiled.params)} parameter(s)"
        )
        return {"compiled_query": compiled}

    async def _node_execute(self, state: PipelineState) -> dict:
        """Node: execute the compiled query. DataAccessError propagates."""
        self._log_communication("Pipeline", "DataStore", "Execute compiled query")
        result = await self.data_store.execute(state["compiled_query"])
        self._log_communication(
            "DataStore", "Pipeline",
            f"Query result: {result.row_count} rows in {result.execution_time:.2f}s"
            f"{' (cached)' if result.cached else ''}"
        )
        return {"query_result": result}

    async def _node_analyze(self, state: PipelineState) -> dict:
        """Node: compute intent-specific statistics."""
        analysis = self.analyzer.analyze(state["structured_query"].intent, state["query_result"].rows)
        self._log_communication(
            "StatisticalAnalyzer", "Pipeline",
            f"Analysis with {len(analysis.visualization_data)} chart series"
        )
        return {"analysis": analysis}

    async def _node_detect(self, state: PipelineState) -> dict:
        """Node: apply pattern rules to the analysis."""
        patterns = self.detector.detect(state["structured_query"], state["analysis"])
        self._log_communication(
            "PatternDetector", "Pipeline", f"{len(patterns.all_findings())} finding(s)"
        )
        return {"patterns": patterns}

    async def _node_generate_insights(self, state: PipelineState) -> dict:
        """Node: narrative, recommendations and top-finding explanation, concurrently."""
        query = state["structured_query"]
        analysis = state["analysis"]
        patterns = state["patterns"]

        self._log_communication("Pipeline", "NarrativeGenerator", "Generate insights")

        tasks = [
            self.narrator.narrate(query, analysis, patterns),
            self.narrator.recommend(query, analysis, patterns),
        ]
        finding = top_finding(patterns)
        if finding is not None:
            tasks.append(self.narrator.explain_pattern(analysis, finding))

        results = await asyncio.gather(*tasks)
        narrative, recommendations = results[0], results[1]
        explanation = results[2] if finding is not None else None

        self._log_communication(
            "NarrativeGenerator", "Pipeline",
            f"Narrative confidence {narrative.confidence:.2f}, "
            f"{len(recommendations)} recommendation(s)"
        )
        return {"narrative": narrative, "recommendations": recommendations, "explanation": explanation}

    async def _node_assemble(self, state: PipelineState) -> dict:
        """Node: assemble the envelope and commit the turn."""
        response = self.assembler.assemble(
            query=state["structured_query"],
            rows=state["query_result"].rows,
            analysis=state["analysis"],
            patterns=state["patterns"],
            narrative=state["narrative"],
            recommendations=state["recommendations"],
            session=state["session"],
            explanation=state.get("explanation"),
        )
        self._log_communication(
            "ResponseAssembler", "Pipeline",
            f"Response {response.response_id} ({time.time() - state['start_time']:.2f}s)"
        )
        return {"response": response}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def process_query(self, query: str, owner: str = ANONYMOUS_OWNER,
                            session_id: Optional[str] = None) -> ResponseEnvelope:
        """
        Process a question through the LangGraph pipeline.

        Args:
            query: Natural language question
            owner: Owner of the conversation
            session_id: Conversation to continue (optional)

        Returns:
            ResponseEnvelope for the question

        Raises:
            ValidationError: If the question is missing or blank
            DataAccessError: If the data store cannot answer the compiled query
        """
        if not query or not query.strip():
            raise ValidationError("Query is required", field="query")

        logger.info(f"Processing query for owner {owner}: {query}")

        initial_state: PipelineState = {
            "user_query": query.strip(),
            "owner": owner or ANONYMOUS_OWNER,
            "session_id": session_id,
            "start_time": time.time(),
        }

        final_state = await self._graph.ainvoke(initial_state)
        return final_state["response"]

    def list_conversations(self, owner: str) -> List[Dict[str, Any]]:
        """Summaries of the owner's live conversations, most recent first."""
        return [session.summary() for session in self.store.list_for_owner(owner)]

    def get_conversation(self, owner: str, session_id: str) -> Optional[Dict[str, Any]]:
        """Summary of one of the owner's conversations, or None."""
        session = self.store.get(owner, session_id)
        return session.summary() if session else None

    # ------------------------------------------------------------------
    # Helper methods
    # ------------------------------------------------------------------

    def _log_communication(self, sender: str, receiver: str, message: str) -> None:
        """
        Log communication between pipeline stages.
        """
        log_entry = {
            "timestamp": datetime.now().isoformat(),
            "sender": sender,
            "receiver": receiver,
            "message": message,
        }
        self.communication_log.append(log_entry)
        if len(self.communication_log) > MAX_LOG_ENTRIES:
            del self.communication_log[0]
        logger.info(f"[{sender} -> {receiver}] {message}")

    def get_communication_log(self) -> List[dict]:
        """
        Get the stage communication log.
        """
        return self.communication_log

    def clear_communication_log(self) -> None:
        """Clear the communication log."""
        self.communication_log.clear()
        logger.info("Communication log cleared")
