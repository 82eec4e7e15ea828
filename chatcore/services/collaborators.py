"""
Narrow interfaces to the services the messaging core depends on but does not own.

The Mongo-backed repositories satisfy these protocols; tests may hand the
service anything with the same async methods.
"""

from typing import Dict, List, Optional, Protocol

from chatcore.models.checkin import CheckInDocument
from chatcore.models.listing import ListingSummary
from chatcore.models.user import UserIdentity
from chatcore.repositories.user_repository import UserRepository, to_identity


class IdentityProvider(Protocol):

    async def resolve_user(self, user_id: str) -> Optional[UserIdentity]:
        ...

    async def resolve_users(self, user_ids: List[str]) -> Dict[str, UserIdentity]:
        ...


class Marketplace(Protocol):

    async def get_listing_summary(self, listing_id: str) -> Optional[ListingSummary]:
        ...


class CheckIns(Protocol):

    async def get_check_in(self, check_in_id: str) -> Optional[CheckInDocument]:
        ...

    async def create_check_in(self, user_id: str, coordinates: List[float], note: Optional[str] = None) -> str:
        ...


class MongoIdentityProvider:

    def __init__(self, users: UserRepository) -> None:
        self._users = users

    async def resolve_user(self, user_id: str) -> Optional[UserIdentity]:
        user = await self._users.get_user_by_id(user_id)
        return to_identity(user) if user else None

    async def resolve_users(self, user_ids: List[str]) -> Dict[str, UserIdentity]:
        users = await self._users.get_users_by_ids(user_ids)
        return {uid: to_identity(user) for uid, user in users.items()}
