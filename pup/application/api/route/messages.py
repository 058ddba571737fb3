from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from application.app_context import AppContext
from domain.models import Err, InboundMessage, Memory, PipelineResult, UsageSummary

router = APIRouter()


def get_app_context(request: Request) -> AppContext:
    return request.app.state.context


Context = Annotated[AppContext, Depends(get_app_context)]


def _memory_view(memory: Memory) -> Dict[str, Any]:
    return memory.model_dump(mode="json", exclude={"embedding"})


@router.get("/health")
async def health(context: Context):
    details = await context.health()
    degraded = not details["cache"] or any(
        breaker["state"] != "closed" for breaker in details["breakers"].values()
    )
    return {"status": "degraded" if degraded else "ok", **details}


# Inbound messages arrive here after Slack verification and routing upstream
@router.post("/api/v1/messages", response_model=PipelineResult)
async def process_message(message: InboundMessage, context: Context):
    return await context.pipeline.process_message(message)


@router.get("/api/v1/memories/search")
async def search_memories(
    context: Context,
    q: str = Query(..., min_length=1),
    limit: int = Query(5, ge=1, le=50),
    channel_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    memories = await context.pipeline.search_memories(q, limit, channel_id)
    return [_memory_view(memory) for memory in memories]


@router.get("/api/v1/channels/{channel_id}/memories")
async def recent_memories(
    channel_id: str,
    context: Context,
    limit: int = Query(10, ge=1, le=100),
) -> List[Dict[str, Any]]:
    result = await context.memory_store.get_recent(channel_id, limit)
    if isinstance(result, Err):
        raise HTTPException(status_code=503, detail="Memory store unavailable")
    return [_memory_view(memory) for memory in result.value]


@router.post("/api/v1/memories/cleanup")
async def cleanup_memories(context: Context):
    deleted = await context.memory_store.cleanup_expired()
    return {"deleted": deleted}


@router.delete("/api/v1/users/{user_id}")
async def delete_user(user_id: str, context: Context):
    """Erase a user's profile and authored memories"""
    return await context.profiles.delete_user_data(user_id)


@router.get("/api/v1/usage", response_model=List[UsageSummary])
async def usage(context: Context, since: Optional[datetime] = None):
    return await context.ledger.summarize(since)
