"""User profiles kept under ``users/{uid}``."""

from typing import Any, Union

from canvass.config.logging_config import get_logger
from canvass.data.base_store import SERVER_TIMESTAMP, BaseEntityStore, DocumentSnapshot
from canvass.data.models import Identity, UserProfile
from canvass.data.paths import user_path
from canvass.domain.live_view import NOT_FOUND, LiveView
from canvass.utils.error_handling import NotFoundError

logger = get_logger(__name__)


class ProfileRepository:
    """Creates profiles lazily and edits display names."""

    def __init__(self, store: BaseEntityStore, default_display_name: str = "Utilisateur"):
        self.store = store
        self.default_display_name = default_display_name

    async def ensure_profile(self, identity: Identity) -> UserProfile:
        """Return the identity's profile, creating it on first sight."""
        path = user_path(identity.uid)
        try:
            snapshot = await self.store.get(path)
            return UserProfile.from_dict(identity.uid, snapshot.data)
        except NotFoundError:
            pass

        display_name = identity.display_name or self.default_display_name
        await self.store.set(path, {
            "displayName": display_name,
            "createdAt": SERVER_TIMESTAMP,
        })
        logger.info(f"Created profile for {identity.uid}")
        return UserProfile(uid=identity.uid, display_name=display_name)

    async def save_display_name(self, uid: str, name: str) -> str:
        """Store a new display name; a blank name falls back to the default."""
        display_name = (name or "").strip() or self.default_display_name
        await self.store.set(user_path(uid), {
            "displayName": display_name,
            "updatedAt": SERVER_TIMESTAMP,
        }, merge=True)
        return display_name

    def watch_profile(self, uid: str) -> LiveView[UserProfile]:
        def to_profile(snapshot: DocumentSnapshot) -> Union[UserProfile, Any]:
            if not snapshot.exists:
                return NOT_FOUND
            return UserProfile.from_dict(uid, snapshot.data)

        view = LiveView(f"profile:{uid}", to_profile)
        view.attach(self.store.subscribe(user_path(uid), view.handle_snapshot))
        return view
