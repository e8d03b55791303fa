from fastapi import APIRouter, Depends, HTTPException, Query
from starlette.concurrency import run_in_threadpool
from schemas.rooms import HistoryResponse, MessageRecord, RoomDetailsResponse, RoomListResponse, RoomSummary
from backend import HistoryFilter, HistoryPage
from chat.engine import ChatEngine
from chat.rooms import RoomSnapshot
from constants import HISTORY_MAX_PAGE_SIZE, HISTORY_PAGE_SIZE
from dependencies import get_backend, get_engine
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


def _summary(snapshot: RoomSnapshot, member_count: int) -> dict:
    return {
        "room_id": snapshot.room_id,
        "display_name": snapshot.display_name,
        "member_count": member_count,
        "created_at": snapshot.created_at.isoformat(),
        "last_activity_at": snapshot.last_activity_at.isoformat(),
    }


@rooms_router.get("/", response_model=RoomListResponse)
async def list_rooms(engine: ChatEngine = Depends(get_engine)):
    """Live rooms, i.e. rooms with at least one connected member."""
    snapshots = engine.rooms.rooms()
    logger.debug(f"Listing {len(snapshots)} live rooms")
    return RoomListResponse(rooms=[RoomSummary(**_summary(s, len(s.members))) for s in snapshots])


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, engine: ChatEngine = Depends(get_engine)):
    """
    Get live room details.

    Returns:
    - room_id, display_name
    - member_count and members (connection_id, identity_id, display_name)
    - created_at, last_activity_at
    """
    snapshot = engine.rooms.get(room_id)
    if snapshot is None:
        logger.info(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")
    return RoomDetailsResponse(**_summary(snapshot, len(snapshot.members)), members=snapshot.members)


@rooms_router.get("/{room_id}/messages", response_model=HistoryResponse)
async def get_room_history(
    room_id: str,
    offset: int = Query(0, ge=0, description="Messages to skip, counted back from the newest"),
    limit: int = Query(HISTORY_PAGE_SIZE, ge=1, le=HISTORY_MAX_PAGE_SIZE),
    backend=Depends(get_backend),
):
    """Stored room history, oldest first within the page."""
    page = HistoryPage(offset=offset, limit=limit)
    try:
        messages = await run_in_threadpool(backend.query_history, HistoryFilter(room_id=room_id), page)
    except Exception as e:
        logger.error(f"Error loading history for room {room_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to load room history")
    return HistoryResponse(messages=[MessageRecord(**m) for m in messages], offset=offset, limit=limit)
