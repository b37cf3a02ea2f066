"""
Settings router: recorder preferences and the active session.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from config import get_settings, save_settings, clear_settings_cache, set_log_level, RecorderSettings
from recorder.errors import SchedulerError
from recorder.store import session_key_for_account, session_key_for_playlist
from recording_scheduler import RecordingScheduler
from routers.common import get_scheduler, http_error

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Settings"])

MASKED = "********"


class SessionRequest(BaseModel):
    """Either an explicit session key, an Xtream account, or a playlist id."""
    session_key: str = ""
    host: str = ""
    port: int = 80
    username: str = ""
    playlist_id: str = ""

    def resolve_key(self) -> str:
        if self.session_key:
            return self.session_key
        if self.host and self.username:
            return session_key_for_account(self.host, self.port, self.username)
        if self.playlist_id:
            return session_key_for_playlist(self.playlist_id)
        return ""


def settings_to_response(settings: RecorderSettings) -> dict:
    data = settings.model_dump()
    if data.get("xtream_password"):
        data["xtream_password"] = MASKED
    data["xtream_configured"] = settings.is_xtream_configured()
    return data


@router.get("/api/settings")
async def get_current_settings(scheduler: RecordingScheduler = Depends(get_scheduler)):
    """Get the settings the scheduler is running with (password masked)."""
    return settings_to_response(scheduler.settings)


@router.put("/api/settings")
async def update_settings(updates: dict, scheduler: RecordingScheduler = Depends(get_scheduler)):
    """Update any subset of the settings and apply them to the running scheduler."""
    current = scheduler.settings
    merged = {**current.model_dump(), **updates}
    if merged.get("xtream_password") == MASKED:
        merged["xtream_password"] = current.xtream_password

    try:
        new_settings = RecorderSettings(**merged)
    except PydanticValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors(include_url=False, include_context=False))

    account_fields = ("xtream_host", "xtream_port", "xtream_username", "xtream_use_ssl")
    account_changed = any(getattr(new_settings, f) != getattr(current, f) for f in account_fields)
    if account_changed and "session_key" not in updates and new_settings.is_xtream_configured():
        new_settings = new_settings.model_copy(update={
            "session_key": session_key_for_account(
                new_settings.xtream_host, new_settings.xtream_port, new_settings.xtream_username
            ),
        })

    try:
        await scheduler.reconfigure(new_settings)
    except SchedulerError as e:
        raise http_error(e)
    save_settings(new_settings)
    clear_settings_cache()
    if new_settings.backend_log_level != current.backend_log_level:
        set_log_level(new_settings.backend_log_level)
    if new_settings.session_key != scheduler.store.session_key:
        await scheduler.switch_session(new_settings.session_key)
    return settings_to_response(new_settings)


@router.get("/api/session")
async def get_session_info(scheduler: RecordingScheduler = Depends(get_scheduler)):
    store = scheduler.store
    return {
        "session_key": store.session_key,
        "recordings": len(store.list_recordings()),
        "series": len(store.list_series()),
        "dirty": store.dirty,
        "last_error": store.last_error,
    }


@router.put("/api/session")
async def switch_session(request: SessionRequest, scheduler: RecordingScheduler = Depends(get_scheduler)):
    """Switch the active account or playlist; recordings of the old one are stopped."""
    session_key = request.resolve_key()
    if not session_key:
        raise HTTPException(status_code=400, detail="A session key, account or playlist id is required")

    await scheduler.switch_session(session_key)

    settings = get_settings()
    if settings.session_key != session_key:
        save_settings(settings.model_copy(update={"session_key": session_key}))
        clear_settings_cache()
    return await get_session_info(scheduler)
