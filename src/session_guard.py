"""User contexts and the guard that keeps an admin signed in during bulk work.

Creating an account without a service-role key goes through public sign-up,
which replaces the gateway's ambient session with the new student's. The
guard snapshots the admin session before a privileged operation, checks it
after every step, and puts it back on every exit path.
"""

import inspect
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from src.errors import NotAdminError
from src.logger import app_logger as logger, audit_logger
from src.models import Profile, Session
from src.services.identity_client import IdentityGateway
from src.telemetry import telemetry


@dataclass
class UserContext:
    """The signed-in user for one request: gateway, session and cached profile."""
    gateway: IdentityGateway
    session: Optional[Session]
    profile: Optional[Profile]

    @property
    def is_authenticated(self) -> bool:
        return self.session is not None and self.profile is not None

    @property
    def is_admin(self) -> bool:
        return self.is_authenticated and self.profile.is_admin

    def clear(self) -> None:
        self.session = None
        self.profile = None
        self.gateway.restore_session(None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session": self.session.to_dict() if self.session else None,
            "profile": self.profile.to_dict() if self.profile else None,
        }

    @classmethod
    def from_dict(cls, gateway: IdentityGateway, data: Optional[Dict[str, Any]]) -> "UserContext":
        """Rebuild a context from its serialised form and make its session ambient."""
        data = data or {}
        session = Session.from_dict(data.get("session"))
        profile = Profile.from_dict(data.get("profile"))
        gateway.restore_session(session)
        context_cls = AdminContext if profile is not None and profile.is_admin else UserContext
        return context_cls(gateway=gateway, session=session, profile=profile)


class AdminContext(UserContext):
    """A UserContext whose profile carries the admin role."""


@dataclass(frozen=True)
class SessionSnapshot:
    session: Optional[Session]
    profile: Optional[Profile]


class SessionIntegrityGuard:
    def __init__(self, context: UserContext):
        self.context = context
        self.snapshot: Optional[SessionSnapshot] = None

    @property
    def gateway(self) -> IdentityGateway:
        return self.context.gateway

    def _require_admin(self) -> None:
        context = self.context
        if not isinstance(context, AdminContext) or not context.is_admin:
            raise NotAdminError()
        if self.gateway.session is None:
            raise NotAdminError("The admin session has expired; sign in again")

    def _restore(self) -> bool:
        """Put the snapshot back on the gateway and context. Returns True if it had drifted."""
        snapshot = self.snapshot
        drifted = self.gateway.session is not snapshot.session
        if drifted:
            self.gateway.restore_session(snapshot.session)
            admin_id = snapshot.profile.account_id if snapshot.profile else None
            logger.warning("Ambient session changed during a privileged step; admin session restored")
            audit_logger.log_session_restored(admin_id, drifted=True)
            telemetry.record_session_restore(True)
        self.context.session = snapshot.session
        self.context.profile = snapshot.profile
        return drifted

    def checkpoint(self) -> bool:
        """Post-step restoration; call after each record of a bulk operation."""
        if self.snapshot is None:
            raise RuntimeError("checkpoint() called outside preserved()")
        return self._restore()

    @asynccontextmanager
    async def preserved(self):
        self._require_admin()
        self.snapshot = SessionSnapshot(self.gateway.save_session(), self.context.profile)
        try:
            yield self
        finally:
            self._restore()
            self.snapshot = None


async def with_preserved_session(
    context: UserContext,
    operation: Callable[[SessionIntegrityGuard], Union[Awaitable[Any], Any]]
) -> Any:
    """Run ``operation(guard)`` with the admin session snapshotted and restored afterwards."""
    guard = SessionIntegrityGuard(context)
    async with guard.preserved():
        result = operation(guard)
        if inspect.isawaitable(result):
            result = await result
        return result
