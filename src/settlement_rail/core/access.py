"""
Access Boundary

Two single-identity roles:
- ADMINISTRATOR: reassigns roles and, where allowed, changes rates
- REPORTER: records usage and terminates rails

Settlement has no caller restriction so either counterparty can trigger it.
"""

from enum import Enum
from threading import Lock
from typing import Optional, Tuple
import structlog

from .errors import InvalidAddress, Unauthorized
from .facts import FactJournal, FactType

logger = structlog.get_logger()


class Role(Enum):
    ADMINISTRATOR = "ADMINISTRATOR"
    REPORTER = "REPORTER"


def _require_identity(identity: Optional[str], role: Role) -> str:
    if not identity or not str(identity).strip():
        raise InvalidAddress(f"{role.value.lower()} identity must not be empty")
    return str(identity)


class AccessControl:
    """Holds the current administrator and reporter and guards restricted calls."""

    def __init__(
        self,
        administrator: str,
        reporter: str,
        journal: Optional[FactJournal] = None,
    ):
        self._administrator = _require_identity(administrator, Role.ADMINISTRATOR)
        self._reporter = _require_identity(reporter, Role.REPORTER)
        self.journal = journal
        self._lock = Lock()

    @property
    def administrator(self) -> str:
        return self._administrator

    @property
    def reporter(self) -> str:
        return self._reporter

    def holder(self, role: Role) -> str:
        if role == Role.ADMINISTRATOR:
            return self._administrator
        return self._reporter

    def require(self, role: Role, caller: Optional[str]) -> None:
        if caller is None or caller != self.holder(role):
            logger.warning("unauthorized_call", caller=caller, required_role=role.value)
            raise Unauthorized(caller or "", role.value)

    def restore(
        self,
        administrator: Optional[str] = None,
        reporter: Optional[str] = None,
    ) -> None:
        """Load persisted role holders, bypassing the administrator check."""
        with self._lock:
            if administrator is not None:
                self._administrator = _require_identity(administrator, Role.ADMINISTRATOR)
            if reporter is not None:
                self._reporter = _require_identity(reporter, Role.REPORTER)

    def set_reporter(self, caller: str, new_reporter: str) -> Tuple[str, str]:
        """Administrator-only. Returns (old, new)."""
        self.require(Role.ADMINISTRATOR, caller)
        new_reporter = _require_identity(new_reporter, Role.REPORTER)
        with self._lock:
            old = self._reporter
            self._reporter = new_reporter

        logger.info("reporter_updated", old_reporter=old, new_reporter=new_reporter)
        if self.journal is not None:
            self.journal.append(FactType.REPORTER_UPDATED, {"old": old, "new": new_reporter})
        return old, new_reporter

    def transfer_administration(self, caller: str, new_administrator: str) -> Tuple[str, str]:
        """Administrator-only. Returns (old, new)."""
        self.require(Role.ADMINISTRATOR, caller)
        new_administrator = _require_identity(new_administrator, Role.ADMINISTRATOR)
        with self._lock:
            old = self._administrator
            self._administrator = new_administrator

        logger.info(
            "administration_transferred",
            old_administrator=old,
            new_administrator=new_administrator,
        )
        if self.journal is not None:
            self.journal.append(
                FactType.ADMINISTRATOR_TRANSFERRED, {"old": old, "new": new_administrator}
            )
        return old, new_administrator
