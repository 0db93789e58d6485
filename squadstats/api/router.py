from datetime import datetime, timedelta
import asyncio
from fastapi import APIRouter, Depends, HTTPException, Query
from .schemas import (
    BufferStatusResponse,
    DeadLetterListResponse,
    LeaderboardResponse,
    LeaderboardWindow,
    ServerStatusResponse,
)
from ..db import queries
from ..event_models import utcnow
from ..services.pipeline import Pipeline, get_pipeline

router = APIRouter(prefix="/v1")

WINDOWS = {"24h": timedelta(hours=24), "7d": timedelta(days=7)}


@router.get("/stats/{steam_id}", response_model=queries.PlayerStats)
async def player_stats(
    steam_id: str,
    since: datetime | None = None,
    pipeline: Pipeline = Depends(get_pipeline),
):
    def load():
        with pipeline.session_factory() as session:
            return queries.player_stats(session, steam_id, since)

    stats = await asyncio.to_thread(load)
    if stats is None:
        raise HTTPException(404, detail="Player not found")
    return stats


@router.get("/leaderboard", response_model=LeaderboardResponse)
async def leaderboard(
    window: LeaderboardWindow = "24h",
    limit: int = Query(10, ge=1, le=100),
    pipeline: Pipeline = Depends(get_pipeline),
):
    since = utcnow() - WINDOWS[window]

    def load():
        with pipeline.session_factory() as session:
            return (
                queries.top_killers(session, since, limit),
                queries.top_revivers(session, since, limit),
            )

    killers, revivers = await asyncio.to_thread(load)
    return LeaderboardResponse(window=window, killers=killers, revivers=revivers)


@router.get("/servers", response_model=ServerStatusResponse)
async def servers(pipeline: Pipeline = Depends(get_pipeline)):
    return pipeline.connections.status()


@router.get("/buffers", response_model=BufferStatusResponse)
async def buffers(pipeline: Pipeline = Depends(get_pipeline)):
    stats = pipeline.buffer.stats()
    return BufferStatusResponse(total=sum(s["size"] for s in stats.values()), buffers=stats)


@router.get("/dead-letters", response_model=DeadLetterListResponse)
async def dead_letters(
    limit: int = Query(25, ge=1, le=500),
    pipeline: Pipeline = Depends(get_pipeline),
):
    entries = [e for e in await pipeline.sink.list_recent(limit=limit)]
    return DeadLetterListResponse(total=len(entries), entries=entries)
