from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from starlette.concurrency import run_in_threadpool
from schemas.rooms import HistoryResponse, MessageRecord
from schemas.users import OnlineUsersResponse
from backend import HistoryFilter, HistoryPage
from chat.engine import ChatEngine
from constants import HISTORY_MAX_PAGE_SIZE, HISTORY_PAGE_SIZE
from dependencies import get_backend, get_engine
from logging_config import get_logger

logger = get_logger(__name__)

users_router = APIRouter(prefix="/users", tags=["users"])


@users_router.get("/online", response_model=OnlineUsersResponse)
async def list_online_users(
    exclude: Optional[str] = Query(None, description="Identity to leave out, usually the caller"),
    engine: ChatEngine = Depends(get_engine),
):
    users = engine.presence.list_online(excluding=exclude)
    return OnlineUsersResponse(users=users, online_count=len(engine.registry), excluding=exclude)


@users_router.get("/{identity_id}/messages/{peer_id}", response_model=HistoryResponse)
async def get_private_history(
    identity_id: str,
    peer_id: str,
    offset: int = Query(0, ge=0),
    limit: int = Query(HISTORY_PAGE_SIZE, ge=1, le=HISTORY_MAX_PAGE_SIZE),
    backend=Depends(get_backend),
):
    """Stored private conversation between two identities, oldest first within the page."""
    page = HistoryPage(offset=offset, limit=limit)
    history_filter = HistoryFilter(identity_id=identity_id, peer_id=peer_id)
    try:
        messages = await run_in_threadpool(backend.query_history, history_filter, page)
    except Exception as e:
        logger.error(f"Error loading history for {identity_id}/{peer_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to load conversation history")
    return HistoryResponse(messages=[MessageRecord(**m) for m in messages], offset=offset, limit=limit)
