"""
services/ai/router.py
AI endpoints: job categorisation and the booking assistant chat.
"""

from fastapi import APIRouter, Depends

from services.ai.categorizer import analyze_job, assistant_chat
from shared.middleware.auth import get_current_user
from shared.models.models import User
from shared.schemas.schemas import (
    AnalyzeJobRequest,
    AssistantChatRequest,
    AssistantChatResponse,
    JobAnalysisResponse,
)

router = APIRouter(prefix="/ai", tags=["AI"])


@router.post("/analyze-job", response_model=JobAnalysisResponse)
async def analyze_job_description(
    data: AnalyzeJobRequest,
    current_user: User = Depends(get_current_user),
):
    """Category, title, tags, price range and urgency for a job description."""
    return JobAnalysisResponse(**await analyze_job(data.description))


@router.post("/chat", response_model=AssistantChatResponse)
async def chat_with_assistant(
    data: AssistantChatRequest,
    current_user: User = Depends(get_current_user),
):
    result = await assistant_chat(data.message, data.context.model_dump())
    return AssistantChatResponse(**result)
