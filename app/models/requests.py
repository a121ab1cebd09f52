# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming INTO the API.
# FastAPI uses them for:
# 1. Request body validation (automatic 422 errors for invalid data)
# 2. OpenAPI documentation generation (visible at /docs)
# =============================================================================

from pydantic import BaseModel, ConfigDict, Field


class AskRequest(BaseModel):
    """
    Request body for POST /ask — route a support question.

    Example:
        {
            "question": "What are the health insurance benefits?",
            "session_id": "user-42"
        }
    """

    # An empty question is accepted: the router answers it by asking the
    # user what they need, instead of rejecting the request
    question: str = Field(
        ...,
        max_length=2000,
        description="The support question to answer",
        examples=["How do I reset my password?"],
    )

    # Turns asked under the same session id share conversation memory,
    # so follow-ups like "How do I apply?" are understood
    session_id: str | None = Field(
        default=None,
        min_length=1,
        max_length=128,
        description="Conversation id. Omit for a one-off question without history.",
        examples=["user-42"],
    )

    # Adds an LLM-as-judge quality score to the response (one extra LLM call)
    evaluate: bool = Field(
        default=False,
        description="Score the answer for relevance, completeness and accuracy",
    )

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {"question": "What are the health insurance benefits?"},
                {
                    "question": (
                        "What are the health insurance benefits and how do "
                        "I reset my password?"
                    ),
                    "session_id": "user-42",
                },
            ]
        }
    )


class StreamRequest(BaseModel):
    """
    Request body for POST /ask/stream — stream a single-agent answer.

    Example:
        {"question": "How do I reset my password?", "session_id": "user-42"}
    """

    question: str = Field(
        ...,
        max_length=2000,
        description="The support question to answer",
        examples=["How do I reset my password?"],
    )
    session_id: str | None = Field(
        default=None,
        min_length=1,
        max_length=128,
        description="Conversation id. Omit for a one-off question without history.",
    )
