# routers/notifications.py
from fastapi import APIRouter, Depends

from ..auth import get_user
from ..deps import Services, get_services
from ..models import UnreadOut

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/unread", response_model=UnreadOut)
def unread(user=Depends(get_user), services: Services = Depends(get_services)):
    return UnreadOut(unread=services.notifications.unread_count(user["id"]))


@router.post("/refresh", response_model=UnreadOut)
def refresh(user=Depends(get_user), services: Services = Depends(get_services)):
    return UnreadOut(unread=services.notifications.refresh(user["id"]))


@router.post("/seen-all", response_model=UnreadOut)
def mark_all_seen(user=Depends(get_user), services: Services = Depends(get_services)):
    return UnreadOut(unread=services.notifications.mark_all_seen(user["id"]))


@router.post("/{event_id}/seen", response_model=UnreadOut)
def mark_seen(event_id: str, user=Depends(get_user), services: Services = Depends(get_services)):
    return UnreadOut(unread=services.notifications.mark_seen(user["id"], event_id))
