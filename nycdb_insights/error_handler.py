"""
Error handling and user feedback module.

This module defines the pipeline's exception taxonomy and provides
user-friendly error messages, example queries for ambiguous questions,
and a bounded in-memory error log.
"""

import logging
import traceback
import time
from typing import Optional, List, Dict, Any
from enum import Enum

logger = logging.getLogger(__name__)


MAX_ERROR_LOG_ENTRIES = 200


class InsightsError(Exception):
    """Base class for pipeline errors."""


class InterpretationFailure(InsightsError):
    """The completion service produced nothing that parses as a query payload."""


class DataAccessError(InsightsError):
    """
    The data store could not answer a compiled query.

    The message names the intent only; SQL text and parameters never
    appear in it.
    """

    def __init__(self, intent: Any):
        self.intent = getattr(intent, "value", intent)
        super().__init__(self._describe())

    def _describe(self) -> str:
        return f"Data access failed for {self.intent} query"


class QueryTimeoutError(DataAccessError):
    """The compiled query ran longer than the data store's timeout."""

    def _describe(self) -> str:
        return f"Data access timed out for {self.intent} query"


class NarrativeGenerationFailure(InsightsError):
    """The completion service failed or returned an empty narrative."""


class ValidationError(InsightsError):
    """A request is missing a required field."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class ErrorType(Enum):
    """Types of errors reported to the user."""
    DATA_ACCESS_ERROR = "data_access_error"
    TIMEOUT_ERROR = "timeout_error"
    VALIDATION_ERROR = "validation_error"
    AMBIGUOUS_QUERY = "ambiguous_query"


# Entries for these types never carry a stack trace, so query text cannot leak
NO_TRACE_TYPES = (ErrorType.DATA_ACCESS_ERROR, ErrorType.TIMEOUT_ERROR)

EXAMPLE_QUERIES: Dict[str, str] = {
    "risk_assessment": "Which buildings in Brooklyn have the highest risk?",
    "trend_analysis": "How have DOB permits changed over the past five years?",
    "violation_search": "Show me HPD violations in the Bronx from last year",
    "building_lookup": "Find residential buildings in Queens",
    "comparison": "Compare violation counts across boroughs",
    "general_stats": "Give me an overview of buildings in Manhattan",
}


class ErrorHandler:
    """
    Error handler for user-friendly error messages and suggestions.

    Formats errors without technical detail, builds clarification messages
    for ambiguous questions, and keeps a bounded log of the errors it has
    formatted.
    """

    def __init__(self, max_log_entries: int = MAX_ERROR_LOG_ENTRIES):
        """Initialize the error handler."""
        self.error_log: List[Dict[str, Any]] = []
        self.max_log_entries = max_log_entries
        self._formatters = {
            ErrorType.DATA_ACCESS_ERROR: lambda error, query: self._format_data_access_error(query),
            ErrorType.TIMEOUT_ERROR: lambda error, query: self._format_timeout_error(query),
            ErrorType.VALIDATION_ERROR: lambda error, query: self._format_validation_error(error),
            ErrorType.AMBIGUOUS_QUERY: lambda error, query: self.clarification_message(query),
        }
        logger.info("ErrorHandler initialized")

    def format_user_friendly_error(
        self,
        error: Exception,
        error_type: ErrorType,
        user_query: Optional[str] = None
    ) -> str:
        """
        Format an error into a user-friendly message without technical details.

        Args:
            error: The original exception
            error_type: Type of error that occurred
            user_query: The user's query that caused the error (optional)

        Returns:
            User-friendly error message
        """
        self._log_error(error, error_type, user_query)
        return self._formatters[error_type](error, user_query)

    def clarification_message(self, user_query: Optional[str] = None) -> str:
        """
        Message asking the user to rephrase an ambiguous question.

        Ambiguity is not an error, so nothing is logged.
        """
        message = "I'm not sure what you'd like to know about NYC buildings."

        if user_query:
            message += f"\n\nYour question: \"{user_query}\""

        message += "\n\nI can help with:"
        message += "\n- Building risk assessments"
        message += "\n- Violation and permit trends over time"
        message += "\n- Searching violations"
        message += "\n- Looking up buildings"
        message += "\n- Comparing boroughs or building types"
        message += "\n- General statistics"
        message += "\n\nCould you rephrase your question with one of these in mind?"

        return message

    def _format_data_access_error(self, user_query: Optional[str]) -> str:
        """Format data access error message."""
        message = "I could not retrieve the building data needed to answer your question."

        if user_query:
            message += f"\n\nYour question: \"{user_query}\""

        message += "\n\nThe data service may be temporarily unavailable. Please try again in a moment."

        return message

    def _format_timeout_error(self, user_query: Optional[str]) -> str:
        """Format timeout error message."""
        message = "Your query took too long to process and timed out."

        if user_query:
            message += f"\n\nYour question: \"{user_query}\""

        message += "\n\nTry:"
        message += "\n- Narrowing the question to one borough"
        message += "\n- Asking about a shorter time period"

        return message

    def _format_validation_error(self, error: Exception) -> str:
        """Format validation error message."""
        return str(error) or "The request is missing a required field."

    def suggest_alternatives(
        self,
        failed_query: str,
        error_type: ErrorType
    ) -> List[str]:
        """
        Suggest example queries for an ambiguous question.

        Args:
            failed_query: The question that could not be answered
            error_type: Type of error that occurred

        Returns:
            One example query per intent, or [] for other error types
        """
        if error_type == ErrorType.AMBIGUOUS_QUERY:
            return list(EXAMPLE_QUERIES.values())
        return []

    def _log_error(
        self,
        error: Exception,
        error_type: ErrorType,
        user_query: Optional[str] = None
    ) -> None:
        """
        Log error with details for debugging.

        A stack trace is recorded only for errors that were raised and only
        for types outside NO_TRACE_TYPES. The log keeps the newest
        max_log_entries entries.
        """
        stack_trace = None
        if error_type not in NO_TRACE_TYPES and error.__traceback__ is not None:
            stack_trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))

        error_entry = {
            "timestamp": time.time(),
            "error_type": error_type.value,
            "error_message": str(error),
            "error_class": error.__class__.__name__,
            "user_query": user_query,
            "stack_trace": stack_trace
        }

        self.error_log.append(error_entry)
        if len(self.error_log) > self.max_log_entries:
            del self.error_log[:len(self.error_log) - self.max_log_entries]

        log_message = (
            f"Error occurred: {error_type.value}\n"
            f"Message: {str(error)}\n"
            f"Query: {user_query}"
        )
        if stack_trace:
            log_message += f"\nStack trace:\n{stack_trace}"

        if error_type == ErrorType.VALIDATION_ERROR:
            logger.warning(log_message)
        else:
            logger.error(log_message)

    def get_error_log(self) -> List[Dict[str, Any]]:
        """
        Get the error log.

        Returns:
            List of error log entries
        """
        return self.error_log

    def clear_error_log(self) -> None:
        """Clear the error log."""
        self.error_log.clear()
        logger.info("Error log cleared")
