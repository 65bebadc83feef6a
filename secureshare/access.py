"""Policy enforcement: consult the policy, audit denials, raise."""

from typing import Optional

import structlog

from secureshare.audit import AuditLedger
from secureshare.errors import AuthenticationRequired, MaintenanceMode, PermissionDenied
from secureshare.models import LogCategory
from secureshare.policy import Action, Actor, Resource, authorize
from secureshare.settings import SettingsService

logger = structlog.get_logger(__name__)


class AccessGuard:
    def __init__(self, settings: SettingsService, audit: AuditLedger):
        self.settings = settings
        self.audit = audit

    def require(
        self,
        actor: Optional[Actor],
        resource: Resource,
        action: Action,
        ip: Optional[str] = None,
        details: Optional[str] = None,
        resource_id: Optional[int] = None,
    ) -> None:
        """Raise unless ``actor`` may perform ``action`` on ``resource``.

        Denials are written to the ledger under the ``security`` category.
        """
        decision = authorize(actor, resource, action, maintenance_mode=self.settings.maintenance_mode)
        if decision.allowed:
            return

        actor_id = actor.id if actor is not None else None
        logger.warning("Access denied", actor_id=actor_id, action=action.value, reason=decision.reason)
        self.audit.append(
            actor_id,
            ip,
            "unauthorized_action" if decision.reason != "maintenance mode" else "maintenance_block",
            details or f"Denied '{action.value}': {decision.reason}",
            LogCategory.SECURITY,
            resource_id,
        )

        if actor is None:
            raise AuthenticationRequired()
        if decision.reason == "maintenance mode":
            raise MaintenanceMode()
        raise PermissionDenied(f"Permission denied: {decision.reason}.")
