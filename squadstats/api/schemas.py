from pydantic import BaseModel
from typing import Any, Dict, List, Literal
from ..db.queries import LeaderboardRow
from ..event_models import DeadLetterEntry

LeaderboardWindow = Literal["24h", "7d"]


class LeaderboardResponse(BaseModel):
    window: LeaderboardWindow
    killers: List[LeaderboardRow]
    revivers: List[LeaderboardRow]


class ServerStatusResponse(BaseModel):
    total: int
    connected: int
    pending: int
    servers: Dict[str, Dict[str, Any]]


class BufferStatusResponse(BaseModel):
    total: int
    buffers: Dict[str, Dict[str, Any]]


class DeadLetterListResponse(BaseModel):
    total: int
    entries: List[DeadLetterEntry]
