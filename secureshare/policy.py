"""Authorization decisions.

``authorize`` is a pure function of its arguments: it reads nothing, writes
nothing and returns the same decision for the same inputs. Callers are
responsible for auditing denials.

Rules, first match wins:

1. no actor: deny everything but ``LOGIN``
2. maintenance mode: deny every non-admin
3. actor-scoped actions (login, logout, upload, listing own files): allow
4. actor owns the resource: allow read/update/delete/visibility toggle
5. admin: read/delete any file, every administrative action, except
   demoting, deactivating or deleting themselves or the seed admin
6. public file: allow read
7. deny
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from secureshare.models import Role, Visibility


class Action(str, Enum):
    LOGIN = "login"
    LOGOUT = "logout"
    UPLOAD = "upload"
    LIST_FILES = "list_files"

    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    TOGGLE_VISIBILITY = "toggle_visibility"

    LIST_ALL_FILES = "list_all_files"
    VIEW_LOGS = "view_logs"
    VIEW_SETTINGS = "view_settings"
    UPDATE_SETTINGS = "update_settings"
    LIST_USERS = "list_users"
    CREATE_USER = "create_user"
    UPDATE_USER = "update_user"
    PROMOTE_USER = "promote_user"
    DEMOTE_USER = "demote_user"
    ACTIVATE_USER = "activate_user"
    DEACTIVATE_USER = "deactivate_user"
    RESET_PASSWORD = "reset_password"
    DELETE_USER = "delete_user"


SELF_SERVICE_ACTIONS = frozenset({Action.LOGIN, Action.LOGOUT, Action.UPLOAD, Action.LIST_FILES})
OWNER_ACTIONS = frozenset({Action.READ, Action.UPDATE, Action.DELETE, Action.TOGGLE_VISIBILITY})
ADMIN_FILE_ACTIONS = frozenset({Action.READ, Action.DELETE})
ADMIN_ACTIONS = frozenset({
    Action.LIST_ALL_FILES,
    Action.VIEW_LOGS,
    Action.VIEW_SETTINGS,
    Action.UPDATE_SETTINGS,
    Action.LIST_USERS,
    Action.CREATE_USER,
    Action.UPDATE_USER,
    Action.PROMOTE_USER,
    Action.DEMOTE_USER,
    Action.ACTIVATE_USER,
    Action.DEACTIVATE_USER,
    Action.RESET_PASSWORD,
    Action.DELETE_USER,
})
# Actions that could leave the platform without its guaranteed administrator.
PROTECTED_ACCOUNT_ACTIONS = frozenset({Action.DEMOTE_USER, Action.DEACTIVATE_USER, Action.DELETE_USER})

INSUFFICIENT_PERMISSION = "insufficient permission"


@dataclass(frozen=True)
class Actor:
    id: int
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass(frozen=True)
class FileResource:
    owner_id: Optional[int]
    visibility: Visibility
    id: Optional[int] = None

    @classmethod
    def of(cls, record) -> "FileResource":
        return cls(owner_id=record.owner_id, visibility=Visibility(record.visibility), id=record.id)


@dataclass(frozen=True)
class UserResource:
    user_id: int
    is_seed_admin: bool = False

    @property
    def owner_id(self) -> int:
        return self.user_id


Resource = Union[FileResource, UserResource, None]


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Decision(True)


def deny(reason: str = INSUFFICIENT_PERMISSION) -> Decision:
    return Decision(False, reason)


def authorize(actor: Optional[Actor], resource: Resource, action: Action, *, maintenance_mode: bool = False) -> Decision:
    if actor is None:
        return ALLOW if action == Action.LOGIN else deny("authentication required")

    if maintenance_mode and not actor.is_admin:
        return deny("maintenance mode")

    if action in SELF_SERVICE_ACTIONS:
        return ALLOW

    owner_id = getattr(resource, "owner_id", None)
    if resource is not None and owner_id is not None and owner_id == actor.id and action in OWNER_ACTIONS:
        return ALLOW

    if actor.is_admin:
        if isinstance(resource, FileResource) and action in ADMIN_FILE_ACTIONS:
            return ALLOW
        if action in ADMIN_ACTIONS:
            if isinstance(resource, UserResource) and action in PROTECTED_ACCOUNT_ACTIONS:
                if resource.user_id == actor.id:
                    return deny("administrators cannot demote, deactivate or delete their own account")
                if resource.is_seed_admin:
                    return deny("the initial administrator account is protected")
            return ALLOW

    if isinstance(resource, FileResource) and resource.visibility == Visibility.PUBLIC and action == Action.READ:
        return ALLOW

    return deny()
