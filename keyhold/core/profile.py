"""Profile edit flow: update name and email, then refresh the session."""

from dataclasses import dataclass, field
import logging
from typing import TYPE_CHECKING, List, Optional

from keyhold.core.session import Session, SessionType
from keyhold.core.updater import FieldUpdate, UpdateReport, apply_updates
from keyhold.errors import KeyholdError, PreconditionError, ProfileRefreshError

if TYPE_CHECKING:
    from keyhold.registry.users import UsersClient

logger = logging.getLogger(__name__)


@dataclass
class ProfileResult:
    changed: List[str] = field(default_factory=list)
    email_changed: bool = False
    report: Optional[UpdateReport] = None

    @property
    def no_changes(self) -> bool:
        return not self.changed


async def update_profile(
    users: "UsersClient",
    session: Session,
    name: Optional[str] = None,
    email: Optional[str] = None,
) -> ProfileResult:
    """
    Update the logged-in user's name and/or email concurrently.

    Fields that are None or unchanged are not sent. The session is refreshed
    only after every update succeeded.

    Raises:
        NotLoggedInError: no session
        PreconditionError: machine session, or no cached user record
        FieldUpdateError: one or more updates failed (all failures attached)
        ProfileRefreshError: updates applied but the session refresh failed
    """
    if session.session_type is SessionType.MACHINE:
        raise PreconditionError("Machines do not have profiles")

    user = session.user
    if user is None:
        raise PreconditionError("No cached profile; log in again")

    current = user.body
    updates = [
        FieldUpdate("name", current.name, current.name if name is None else name, users.update_name),
        FieldUpdate("email", current.email, current.email if email is None else email, users.update_email),
    ]

    result = ProfileResult(changed=[u.field for u in updates if u.changed])
    if result.no_changes:
        return result

    result.report = await apply_updates(updates)
    result.report.raise_for_failures()
    result.email_changed = "email" in result.changed

    try:
        session.update_user(await users.get_self())
    except KeyholdError as e:
        logger.warning("Profile updated but session refresh failed: %s", e)
        raise ProfileRefreshError(
            "Profile updated, but refreshing it failed; log out and log back in"
        ) from e

    return result
