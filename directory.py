import logging
from datetime import datetime
from typing import Optional

from config import Settings
from database import CatalogStore
from errors import NotFoundError
from schemas import Member, MemberStatus, utcnow

logger = logging.getLogger("library.directory")


def degraded_status(member: Member, settings: Settings, now: datetime) -> MemberStatus:
    """Status a member should have given their fines and membership period.

    Blocked members stay blocked, that status is only lifted by an administrator.
    """
    if member.status == MemberStatus.BLOCKED:
        return member.status
    if member.membership_end_date is not None and now > member.membership_end_date:
        return MemberStatus.EXPIRED
    if member.outstanding_fines > settings.suspension_threshold:
        return MemberStatus.SUSPENDED
    if member.status == MemberStatus.SUSPENDED:
        # suspension only ever comes from fines, lift it once they are back under
        return MemberStatus.ACTIVE
    return member.status


class MemberDirectory:
    """Resolves members and their borrowing privileges."""

    def __init__(self, store: CatalogStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def get(self, member_id: str, for_update: bool = False) -> Member:
        member = self.store.get_document(Member, member_id, for_update=for_update)
        if member is None:
            raise NotFoundError("member_not_found", f"Library member {member_id} not found")
        return member

    def resolve(self, member_id: str, now: Optional[datetime] = None, for_update: bool = False) -> Member:
        """Return the member with its status brought up to date.

        The refreshed status is only staged on the returned copy; it is
        persisted by whichever operation commits the member next.
        """
        now = now or utcnow()
        member = self.get(member_id, for_update)
        status = degraded_status(member, self.settings, now)
        if status != member.status:
            logger.info("Member %s status %s -> %s", member_id, member.status.value, status.value)
            member.status = status
        return member
