"""
FastAPI backend for the insight pipeline.

Provides the query endpoint and conversation listing endpoints.
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from nycdb_insights.core.orchestrator import ANONYMOUS_OWNER, InsightPipeline
from nycdb_insights.error_handler import DataAccessError, ErrorType, QueryTimeoutError, ValidationError

logger = logging.getLogger(__name__)


# Pydantic models
class QueryRequest(BaseModel):
    query: Optional[str] = None
    userId: Optional[str] = None
    conversationId: Optional[str] = None


def _error(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error, "message": message},
    )


def create_app(pipeline: InsightPipeline, cors_origins: str = "*") -> FastAPI:
    """
    Create the FastAPI application around a pipeline.

    Args:
        pipeline: Pipeline that answers questions and owns the session store
        cors_origins: Comma-separated allowed origins, or "*"

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(title="NYC Building Insights API")

    # CORS for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in cors_origins.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        return _error(400, "Bad Request", "Invalid request body")

    @app.post("/api/ai/query")
    async def process_query(request: QueryRequest):
        """Answer a natural language question."""
        if not request.query or not request.query.strip():
            return _error(400, "Bad Request", "Query is required")

        try:
            response = await pipeline.process_query(
                request.query,
                owner=request.userId or ANONYMOUS_OWNER,
                session_id=request.conversationId,
            )
        except ValidationError as e:
            message = pipeline.error_handler.format_user_friendly_error(
                e, ErrorType.VALIDATION_ERROR, request.query
            )
            return _error(400, "Bad Request", message)
        except QueryTimeoutError as e:
            message = pipeline.error_handler.format_user_friendly_error(
                e, ErrorType.TIMEOUT_ERROR, request.query
            )
            return _error(500, "Internal Server Error", message)
        except DataAccessError as e:
            message = pipeline.error_handler.format_user_friendly_error(
                e, ErrorType.DATA_ACCESS_ERROR, request.query
            )
            return _error(500, "Internal Server Error", message)
        except Exception as e:
            logger.exception(f"Error processing AI query: {e.__class__.__name__}")
            return _error(500, "Internal Server Error", "Failed to process AI query")

        return {"success": True, "response": response.to_dict()}

    @app.get("/api/ai/conversations")
    async def list_conversations(userId: Optional[str] = None):
        """List a user's live conversations."""
        if not userId:
            return _error(400, "Bad Request", "User ID is required")

        summaries = pipeline.list_conversations(userId)
        return {"success": True, "count": len(summaries), "data": summaries}

    @app.get("/api/ai/conversations/{conversation_id}")
    async def get_conversation(conversation_id: str, userId: Optional[str] = None):
        """Return one of a user's conversations."""
        if not userId:
            return _error(400, "Bad Request", "User ID is required")

        summary = pipeline.get_conversation(userId, conversation_id)
        if summary is None:
            return _error(404, "Not Found", "Conversation not found")
        return {"success": True, "data": summary}

    return app
