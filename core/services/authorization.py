"""
Clearance-based authorization for every gated operation.

Two gate shapes:
- Level gate: caller clearance must be at least the operation's requirement.
- Promotion gate: changing someone's clearance additionally restricts which
  levels the caller may hand out. This is an explicit grant table, not a
  rank comparison.

The gate reports denials on the operational log only. Recording an
ACCESS_DENIED activity event is left to the caller.
"""

from enum import Enum

import structlog

from core.domain.clearance import ClearanceLevel, at_least
from core.domain.errors import ForbiddenError, MonitoringError, UnauthorizedError
from core.domain.models import CallerIdentity
from core.services.result import Result

logger = structlog.get_logger(__name__)


class Operation(str, Enum):
    """Gated operations exposed to callers."""

    VIEW_OWN_ACTIVITY = "view_own_activity"
    VIEW_USER_ACTIVITY = "view_user_activity"
    VIEW_AUDIT_LOG = "view_audit_log"
    READ_MONITORS = "read_monitors"
    MANAGE_BEDS = "manage_beds"
    UPDATE_BED = "update_bed"
    CHANGE_CLEARANCE = "change_clearance"
    LIST_USERS = "list_users"


REQUIRED_CLEARANCE: dict[Operation, ClearanceLevel] = {
    Operation.VIEW_OWN_ACTIVITY: ClearanceLevel.L1,
    Operation.VIEW_USER_ACTIVITY: ClearanceLevel.L3,
    Operation.VIEW_AUDIT_LOG: ClearanceLevel.L4,
    Operation.READ_MONITORS: ClearanceLevel.L2,
    Operation.MANAGE_BEDS: ClearanceLevel.L3,
    Operation.UPDATE_BED: ClearanceLevel.L2,
    Operation.CHANGE_CLEARANCE: ClearanceLevel.L3,
    Operation.LIST_USERS: ClearanceLevel.L3,
}

# Levels each caller level may assign to others.
PROMOTION_GRANTS: dict[ClearanceLevel, frozenset[ClearanceLevel]] = {
    ClearanceLevel.L3: frozenset({ClearanceLevel.L1, ClearanceLevel.L2}),
    ClearanceLevel.L4: frozenset(ClearanceLevel),
}


class AuthorizationGate:
    """Evaluates callers against the access table."""

    def __init__(
        self, required_clearance: dict[Operation, ClearanceLevel] | None = None
    ) -> None:
        self.required_clearance = dict(required_clearance or REQUIRED_CLEARANCE)
        missing = set(Operation) - set(self.required_clearance)
        if missing:
            raise ValueError(f"No clearance requirement for: {sorted(op.value for op in missing)}")
        self.logger = logger.bind(component="authorization_gate")

    def authorize(
        self, caller: CallerIdentity | None, operation: Operation
    ) -> Result[CallerIdentity, MonitoringError]:
        """Level gate: allow iff the caller's clearance reaches the requirement."""
        if caller is None:
            self.logger.info("authorization_denied", operation=operation.value, reason="anonymous")
            return Result.err(UnauthorizedError("Authentication required"))

        required = self.required_clearance[operation]
        if not at_least(caller.clearance_level, required):
            self.logger.info(
                "authorization_denied",
                operation=operation.value,
                user_id=caller.user_id,
                clearance=caller.clearance_level.value,
                required=required.value,
            )
            return Result.err(ForbiddenError("Insufficient clearance level"))

        return Result.ok(caller)

    def authorize_clearance_change(
        self, caller: CallerIdentity | None, new_level: ClearanceLevel
    ) -> Result[CallerIdentity, MonitoringError]:
        """Level gate for CHANGE_CLEARANCE, then the promotion rule."""
        gated = self.authorize(caller, Operation.CHANGE_CLEARANCE)
        if gated.is_err():
            return gated

        identity = gated.unwrap()
        grantable = PROMOTION_GRANTS.get(identity.clearance_level, frozenset())
        if new_level not in grantable:
            self.logger.info(
                "clearance_assignment_denied",
                user_id=identity.user_id,
                clearance=identity.clearance_level.value,
                requested=new_level.value,
            )
            return Result.err(
                ForbiddenError(
                    f"{identity.clearance_level.value} users cannot assign {new_level.value}"
                )
            )
        return Result.ok(identity)
