"""
Permission catalog and default role set.

Permission atoms are ``(Resource, Action)`` pairs. Code refers to them through
the ``PermissionKey`` constants below; the ``"resource:action"`` text form only
appears at the edges (database rows, HTTP payloads) and is validated by
``PermissionKey.parse``.
"""
import enum
from typing import Dict, Iterable, List, NamedTuple, Union


class Resource(str, enum.Enum):
    EVENTS = "events"
    RESOURCES = "resources"
    MEMBERS = "members"
    ROLES = "roles"
    LOGS = "logs"
    TASKS = "tasks"
    FEEDBACK = "feedback"


class Action(str, enum.Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    MANAGE_INSCRIPTIONS = "manage_inscriptions"
    VALIDATE = "validate"
    PUBLISH = "publish"
    INVITE = "invite"
    BAN = "ban"
    CHANGE_ROLE = "change_role"


class PermissionKey(NamedTuple):
    resource: Resource
    action: Action

    def __str__(self) -> str:
        return f"{self.resource.value}:{self.action.value}"

    @classmethod
    def parse(cls, text: str) -> "PermissionKey":
        """
        Parse ``"resource:action"`` into a catalog key.

        Raises:
            ValueError: malformed text, unknown resource/action, or a pair
                that is not part of the catalog
        """
        resource, sep, action = text.partition(":")
        if not sep:
            raise ValueError(f"Malformed permission key {text!r}, expected 'resource:action'")
        key = cls(Resource(resource), Action(action))
        if key not in CATALOG:
            raise ValueError(f"Permission {text!r} is not part of the catalog")
        return key


PermissionLike = Union[PermissionKey, str]


def as_key(permission: PermissionLike) -> PermissionKey:
    if isinstance(permission, PermissionKey):
        return permission
    return PermissionKey.parse(permission)


def _key(resource: Resource, action: Action) -> PermissionKey:
    return PermissionKey(resource, action)


EVENTS_CREATE = _key(Resource.EVENTS, Action.CREATE)
EVENTS_READ = _key(Resource.EVENTS, Action.READ)
EVENTS_UPDATE = _key(Resource.EVENTS, Action.UPDATE)
EVENTS_DELETE = _key(Resource.EVENTS, Action.DELETE)
EVENTS_MANAGE_INSCRIPTIONS = _key(Resource.EVENTS, Action.MANAGE_INSCRIPTIONS)

RESOURCES_CREATE = _key(Resource.RESOURCES, Action.CREATE)
RESOURCES_READ = _key(Resource.RESOURCES, Action.READ)
RESOURCES_UPDATE = _key(Resource.RESOURCES, Action.UPDATE)
RESOURCES_DELETE = _key(Resource.RESOURCES, Action.DELETE)
RESOURCES_VALIDATE = _key(Resource.RESOURCES, Action.VALIDATE)
RESOURCES_PUBLISH = _key(Resource.RESOURCES, Action.PUBLISH)

MEMBERS_READ = _key(Resource.MEMBERS, Action.READ)
MEMBERS_INVITE = _key(Resource.MEMBERS, Action.INVITE)
MEMBERS_CREATE = _key(Resource.MEMBERS, Action.CREATE)
MEMBERS_UPDATE = _key(Resource.MEMBERS, Action.UPDATE)
MEMBERS_DELETE = _key(Resource.MEMBERS, Action.DELETE)
MEMBERS_BAN = _key(Resource.MEMBERS, Action.BAN)
MEMBERS_CHANGE_ROLE = _key(Resource.MEMBERS, Action.CHANGE_ROLE)

ROLES_READ = _key(Resource.ROLES, Action.READ)
ROLES_CREATE = _key(Resource.ROLES, Action.CREATE)
ROLES_UPDATE = _key(Resource.ROLES, Action.UPDATE)
ROLES_DELETE = _key(Resource.ROLES, Action.DELETE)

LOGS_READ = _key(Resource.LOGS, Action.READ)

TASKS_READ = _key(Resource.TASKS, Action.READ)
TASKS_CREATE = _key(Resource.TASKS, Action.CREATE)
TASKS_UPDATE = _key(Resource.TASKS, Action.UPDATE)
TASKS_DELETE = _key(Resource.TASKS, Action.DELETE)

FEEDBACK_READ = _key(Resource.FEEDBACK, Action.READ)
FEEDBACK_CREATE = _key(Resource.FEEDBACK, Action.CREATE)


CATALOG: Dict[PermissionKey, str] = {
    EVENTS_CREATE: "Create new events",
    EVENTS_READ: "View events",
    EVENTS_UPDATE: "Update existing events",
    EVENTS_DELETE: "Delete events",
    EVENTS_MANAGE_INSCRIPTIONS: "Manage event registrations",
    RESOURCES_CREATE: "Create new resources",
    RESOURCES_READ: "View resources",
    RESOURCES_UPDATE: "Update resources",
    RESOURCES_DELETE: "Delete resources",
    RESOURCES_VALIDATE: "Validate a resource (1 of 3 validations)",
    RESOURCES_PUBLISH: "Publish instantly, bypassing the validation workflow",
    MEMBERS_READ: "View the member list",
    MEMBERS_INVITE: "Invite new members (whitelist)",
    MEMBERS_CREATE: "Create a user account manually",
    MEMBERS_UPDATE: "Update a member",
    MEMBERS_DELETE: "Delete a member",
    MEMBERS_BAN: "Ban or suspend a member",
    MEMBERS_CHANGE_ROLE: "Change a member's roles",
    ROLES_READ: "View roles and permissions",
    ROLES_CREATE: "Create new roles",
    ROLES_UPDATE: "Update roles and their permissions",
    ROLES_DELETE: "Delete a role",
    LOGS_READ: "View audit logs",
    TASKS_READ: "View tasks",
    TASKS_CREATE: "Create tasks",
    TASKS_UPDATE: "Update tasks",
    TASKS_DELETE: "Delete tasks",
    FEEDBACK_READ: "View user feedback",
    FEEDBACK_CREATE: "Send feedback",
}


# ============================================================================
# Roles
# ============================================================================

ADMIN_ROLE = "Admin"
MODERATOR_ROLE = "Moderateur"
BUREAU_ROLE = "Bureau"
CA_ROLE = "CA"
SUPER_CORRECTOR_ROLE = "SuperCorrecteur"
CORRECTOR_ROLE = "Correcteur"
MEMBER_ROLE = "Membre"

SUPER_ROLES = frozenset({ADMIN_ROLE})
PROTECTED_ROLES = frozenset({ADMIN_ROLE, MEMBER_ROLE})

MODERATOR_ROLES = (ADMIN_ROLE, MODERATOR_ROLE)
BUREAU_OR_CA_ROLES = (ADMIN_ROLE, BUREAU_ROLE, CA_ROLE)
CORRECTOR_ROLES = (ADMIN_ROLE, SUPER_CORRECTOR_ROLE, CORRECTOR_ROLE)


def is_super_role(role_name: str) -> bool:
    """Holders of a super-role pass every permission check."""
    return role_name in SUPER_ROLES


_TASKS = [TASKS_READ, TASKS_CREATE, TASKS_UPDATE, TASKS_DELETE]
_EVENTS = [EVENTS_CREATE, EVENTS_READ, EVENTS_UPDATE, EVENTS_DELETE, EVENTS_MANAGE_INSCRIPTIONS]

DEFAULT_ROLES: Dict[str, dict] = {
    ADMIN_ROLE: {
        "description": "Administrator with full access",
        "color": "#ef4444",
        "priority": 100,
        "permissions": list(CATALOG),
    },
    MODERATOR_ROLE: {
        "description": "Moderates content and members",
        "color": "#f97316",
        "priority": 80,
        "permissions": [
            EVENTS_READ, RESOURCES_READ, RESOURCES_VALIDATE,
            MEMBERS_READ, MEMBERS_UPDATE, MEMBERS_BAN,
            LOGS_READ, *_TASKS, FEEDBACK_READ, FEEDBACK_CREATE,
        ],
    },
    BUREAU_ROLE: {
        "description": "Manages events and invites new members",
        "color": "#8b5cf6",
        "priority": 70,
        "permissions": [
            *_EVENTS, RESOURCES_READ, MEMBERS_READ, MEMBERS_INVITE, MEMBERS_CREATE,
            *_TASKS, FEEDBACK_READ, FEEDBACK_CREATE,
        ],
    },
    CA_ROLE: {
        "description": "Board of directors - events and invitations",
        "color": "#6366f1",
        "priority": 70,
        "permissions": [
            *_EVENTS, RESOURCES_READ, MEMBERS_READ, MEMBERS_INVITE, MEMBERS_CREATE,
            *_TASKS, FEEDBACK_READ, FEEDBACK_CREATE,
        ],
    },
    SUPER_CORRECTOR_ROLE: {
        "description": "Validates resources and may publish instantly",
        "color": "#10b981",
        "priority": 60,
        "permissions": [
            EVENTS_READ, RESOURCES_READ, RESOURCES_CREATE, RESOURCES_UPDATE,
            RESOURCES_VALIDATE, RESOURCES_PUBLISH, MEMBERS_READ,
            *_TASKS, FEEDBACK_READ, FEEDBACK_CREATE,
        ],
    },
    CORRECTOR_ROLE: {
        "description": "Validates resources (1 of 3 validations required)",
        "color": "#14b8a6",
        "priority": 50,
        "permissions": [
            EVENTS_READ, RESOURCES_READ, RESOURCES_CREATE, RESOURCES_UPDATE,
            RESOURCES_VALIDATE, MEMBERS_READ, *_TASKS, FEEDBACK_READ, FEEDBACK_CREATE,
        ],
    },
    MEMBER_ROLE: {
        "description": "Standard member with access to resources",
        "color": "#3b82f6",
        "priority": 10,
        "permissions": [EVENTS_READ, RESOURCES_READ, MEMBERS_READ, *_TASKS, FEEDBACK_CREATE],
    },
}


def key_names(keys: Iterable[PermissionLike]) -> List[str]:
    return [str(as_key(k)) for k in keys]
