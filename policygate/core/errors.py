from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from policygate.core.rbac import Decision


class PolicyGateError(Exception):
    """Base class for errors raised by policygate."""


class RoleCatalogUnavailable(PolicyGateError):
    """The role catalog backing store could not be read for this evaluation."""


class RoleCatalogMisconfigured(PolicyGateError):
    """The role catalog provider is unusable; raised to the caller instead of a deny."""


class InvalidRoleName(PolicyGateError):
    def __init__(self, value: str, message: str = "Role name may contain only letters, numbers, underscores, and hyphens."):
        super().__init__(message)
        self.value = value
        self.message = message


class RoleNotFound(PolicyGateError):
    def __init__(self, missing: List[str]):
        super().__init__(f"unknown role(s): {', '.join(missing)}")
        self.missing = missing


class RoleAlreadyExists(PolicyGateError):
    def __init__(self, role_id: str):
        super().__init__(f"role already exists: {role_id}")
        self.role_id = role_id


class RbacDenied(PolicyGateError):
    def __init__(self, decision: "Decision", route_id: Optional[str] = None):
        reason = decision.reason.value if decision.reason else "unknown"
        super().__init__(f"access denied: {reason}")
        self.decision = decision
        self.route_id = route_id
