"""Online roster tracking for a trip room."""

from typing import Dict, Iterable, List, Optional

import structlog

from terravoyage.collaboration.events import UserPresence

logger = structlog.get_logger()


class PresenceTracker:
    """Keeps the de-duplicated set of users currently online in a room.

    The roster never holds offline placeholders: an offline update removes
    the user, and snapshots are filtered to online users only. State lives
    for the connection's lifetime and is rebuilt from server snapshots after
    a reconnect.
    """

    def __init__(self):
        self.logger = logger.bind(component="presence_tracker")
        self._online: Dict[str, UserPresence] = {}

    @property
    def online_users(self) -> List[UserPresence]:
        """Current roster, in order of last update."""
        return list(self._online.values())

    def apply_presence(self, presence: UserPresence) -> None:
        """Apply a single-user presence update."""
        self._online.pop(presence.user_id, None)
        if presence.is_online:
            self._online[presence.user_id] = presence

    def apply_roster(self, users: Iterable[UserPresence]) -> None:
        """Replace the roster with a server snapshot."""
        self._online = {user.user_id: user for user in users if user.is_online}
        self.logger.debug("Roster replaced", online=len(self._online))

    def get(self, user_id: str) -> Optional[UserPresence]:
        """Get presence for an online user."""
        return self._online.get(user_id)

    def is_online(self, user_id: str) -> bool:
        """Check if a user is in the roster."""
        return user_id in self._online

    def clear(self) -> None:
        """Forget everyone, e.g. after losing the connection."""
        self._online.clear()

    def __len__(self) -> int:
        return len(self._online)
