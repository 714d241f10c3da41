"""
Usage, analysis and signup routes.

- GET  /api/usage: current period usage
- POST /api/analyses: metered website analysis (429 when over quota)
- POST /api/users: signup, creates a free-tier user
"""
import asyncio
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel

from responsiai.api.deps import get_container, get_current_user_id
from responsiai.core.container import Container
from responsiai.core.errors import ValidationError
from responsiai.features.analysis.fetcher import AnalysisReport
from responsiai.models.user import User

router = APIRouter(tags=["usage"])


class UsageResponse(BaseModel):
    count: int
    limit: Optional[int]
    period_key: str
    remaining: Optional[int]


class AnalysisRequest(BaseModel):
    url: str


class AnalysisResponse(BaseModel):
    report: AnalysisReport
    usage: UsageResponse


class SignupRequest(BaseModel):
    user_id: str
    email: str
    display_name: Optional[str] = None


def _usage_payload(snapshot) -> dict:
    remaining = None if snapshot.limit is None else max(snapshot.limit - snapshot.count, 0)
    return {
        "count": snapshot.count,
        "limit": snapshot.limit,
        "period_key": snapshot.period_key,
        "remaining": remaining,
    }


@router.get("/usage", response_model=UsageResponse)
async def get_usage(
    user_id: str = Depends(get_current_user_id),
    container: Container = Depends(get_container),
):
    snapshot = await asyncio.to_thread(container.meter.current_usage, user_id)
    return _usage_payload(snapshot)


@router.post("/analyses", response_model=AnalysisResponse)
async def create_analysis(
    body: AnalysisRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    container: Container = Depends(get_container),
):
    """
    Analyze a website's responsiveness.

    Errors:
        429: Monthly analysis limit reached (code limit_exceeded)
        502: Website could not be fetched (usage not counted)
    """
    result = await container.analyses.run(user_id, body.url)
    if result.intents:
        # Warning emails go out after the response
        background_tasks.add_task(container.dispatcher.dispatch, result.intents)
    return {"report": result.report, "usage": _usage_payload(result.usage)}


@router.post("/users", status_code=201)
async def create_user(body: SignupRequest, container: Container = Depends(get_container)):
    if "@" not in body.email:
        raise ValidationError("A valid email is required")
    user = await asyncio.to_thread(
        container.repository.create_user,
        User(user_id=body.user_id, email=body.email.strip().lower(), display_name=body.display_name),
    )
    return {
        "user_id": user.user_id,
        "email": user.email,
        "display_name": user.display_name,
        "plan_tier": user.plan_tier.value,
    }
