# File: src/swaphub/application/membership_service.py
"""
Favorite and recently viewed station sets

A favorite toggle holds a lease on (user, station) for its whole duration.
A second toggle for the same pair while the first is in flight is rejected
with OperationInProgress rather than queued.
"""

from datetime import datetime
from typing import Callable, List, Optional

from ..domain.models import Membership, MembershipKind, FavoriteToggledEvent
from ..infrastructure.repositories import UnitOfWork
from ..infrastructure.locking import LeaseRegistry, InFlightRegistry
from ..infrastructure.messaging import MessageBus
from .base import ApplicationService


class MembershipService(ApplicationService):
    """Per-user favorite and recent station sets"""

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        message_bus: Optional[MessageBus] = None,
        leases: Optional[LeaseRegistry] = None,
        recent_limit: int = 10
    ):
        super().__init__(uow_factory, message_bus)
        self.leases = leases or InFlightRegistry()
        self.recent_limit = recent_limit

    # ------------------------------------------------------------------
    # Favorites
    # ------------------------------------------------------------------

    def toggle_favorite(self, user_id: str, station_id: str) -> bool:
        """Flip membership; returns the new state"""
        with self.leases.lease(f"favorite:{user_id}:{station_id}"):
            with self.uow_factory() as uow:
                self._load_station(uow, station_id)
                membership = Membership(user_id, station_id, MembershipKind.FAVORITE)
                if uow.memberships.exists(membership.id):
                    uow.memberships.delete(membership.id)
                    is_favorite = False
                else:
                    uow.memberships.add(membership)
                    is_favorite = True

        self.logger.info(f"User {user_id} {'added' if is_favorite else 'removed'} favorite station {station_id}")
        self._publish([FavoriteToggledEvent(user_id, station_id, is_favorite)])
        return is_favorite

    def is_favorite(self, user_id: str, station_id: str) -> bool:
        with self.uow_factory() as uow:
            return uow.memberships.exists(Membership(user_id, station_id, MembershipKind.FAVORITE).id)

    def list_favorites(self, user_id: str) -> List[str]:
        """Station ids, most recently added first"""
        with self.uow_factory() as uow:
            return [m.station_id for m in uow.memberships.list_for_user(user_id, MembershipKind.FAVORITE)]

    def clear_favorites(self, user_id: str) -> int:
        return self._clear(user_id, MembershipKind.FAVORITE)

    # ------------------------------------------------------------------
    # Recently viewed
    # ------------------------------------------------------------------

    def record_view(self, user_id: str, station_id: str) -> List[str]:
        """Move the station to the front of the user's recent list"""
        with self.leases.lease(f"recent:{user_id}"):
            with self.uow_factory() as uow:
                self._load_station(uow, station_id)
                membership = Membership(user_id, station_id, MembershipKind.RECENT, datetime.now())
                if uow.memberships.exists(membership.id):
                    uow.memberships.delete(membership.id)
                uow.memberships.add(membership)

                recent = uow.memberships.list_for_user(user_id, MembershipKind.RECENT)
                for stale in recent[self.recent_limit:]:
                    uow.memberships.delete(stale.id)

                return [m.station_id for m in recent[:self.recent_limit]]

    def list_recent(self, user_id: str) -> List[str]:
        with self.uow_factory() as uow:
            return [m.station_id for m in uow.memberships.list_for_user(user_id, MembershipKind.RECENT)]

    def clear_recent(self, user_id: str) -> int:
        return self._clear(user_id, MembershipKind.RECENT)

    def _clear(self, user_id: str, kind: MembershipKind) -> int:
        """Unconditional and idempotent; returns how many entries were removed"""
        with self.uow_factory() as uow:
            memberships = uow.memberships.list_for_user(user_id, kind)
            for membership in memberships:
                uow.memberships.delete(membership.id)

        if memberships:
            self.logger.info(f"Cleared {len(memberships)} {kind.value} stations for user {user_id}")
        return len(memberships)
