from fastapi import APIRouter, Depends, Request

from blog_api.dependencies import get_ai, get_current_user
from blog_api.models import User
from blog_api.rate_limiter import ai_limit, limiter
from blog_api.schemas import (
    GenerateIdeasRequest,
    GeneratePostRequest,
    GenerateReplyRequest,
    GenerateSummaryRequest,
    PostIdea,
    PostSummary,
)
from blog_api.services.ai_service import AIClient

router = APIRouter(prefix="/api/v1/ai", tags=["ai"])


@router.post("/generate")
@limiter.limit(ai_limit)
async def generate_post(
    request: Request,
    data: GeneratePostRequest,
    user: User = Depends(get_current_user),
    ai: AIClient = Depends(get_ai),
):
    return {"content": await ai.generate_post(data.title, data.tone)}


@router.post("/generate-ideas", response_model=list[PostIdea])
@limiter.limit(ai_limit)
async def generate_ideas(
    request: Request,
    data: GenerateIdeasRequest,
    user: User = Depends(get_current_user),
    ai: AIClient = Depends(get_ai),
):
    return await ai.generate_ideas(data.topics)


@router.post("/generate-reply")
@limiter.limit(ai_limit)
async def generate_reply(
    request: Request,
    data: GenerateReplyRequest,
    user: User = Depends(get_current_user),
    ai: AIClient = Depends(get_ai),
):
    return {"reply": await ai.generate_reply(data.content, data.author)}


@router.post("/generate-summary", response_model=PostSummary)
@limiter.limit(ai_limit)
async def generate_summary(
    request: Request,
    data: GenerateSummaryRequest,
    ai: AIClient = Depends(get_ai),
):
    return await ai.generate_summary(data.content)
