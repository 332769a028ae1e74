"""
Access Control
--------------
Flat allow-list of roles per tool name.

Rules:
- Admin is always allowed
- A tool-specific policy replaces the default, it does not extend it
- Policies are looked up on every call; nothing is cached
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union
import logging
import threading

import yaml


class UserRole(str, Enum):
    """Coarse-grained identity tags."""
    ADMIN = "admin"
    USER = "user"
    GUEST = "guest"


DEFAULT_POLICY_NAME = "*"

Role = Union[UserRole, str]


def _role_value(role: Role) -> str:
    return role.value if isinstance(role, UserRole) else str(role)


def _ordered_roles(roles: Iterable[Role]) -> Tuple[str, ...]:
    """De-duplicate roles, keeping first-seen order."""
    seen: Dict[str, None] = {}
    for role in roles:
        seen.setdefault(_role_value(role), None)
    return tuple(seen)


@dataclass(frozen=True)
class AccessPolicy:
    """Roles allowed to call a tool (or every tool, for the default)."""
    tool_name: str
    allowed_roles: Tuple[str, ...]

    def allows(self, role: Role) -> bool:
        return _role_value(role) in self.allowed_roles


class AccessControlService:
    """
    Per-tool role allow-lists with a default fallback policy.
    """

    def __init__(self, default_roles: Optional[Iterable[Role]] = None):
        if default_roles is None:
            default_roles = (UserRole.ADMIN, UserRole.USER)
        self._default_policy = AccessPolicy(DEFAULT_POLICY_NAME, _ordered_roles(default_roles))
        self._policies: Dict[str, AccessPolicy] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger("localrpc.security.access")

    def add_policy(self, tool_name: str, allowed_roles: Iterable[Role]) -> AccessPolicy:
        """Add or replace the policy for a tool."""
        policy = AccessPolicy(tool_name, _ordered_roles(allowed_roles))
        with self._lock:
            self._policies[tool_name] = policy
        self._logger.debug(f"Policy for {tool_name}: {list(policy.allowed_roles)}")
        return policy

    def remove_policy(self, tool_name: str) -> bool:
        with self._lock:
            return self._policies.pop(tool_name, None) is not None

    def get_policy(self, tool_name: str) -> AccessPolicy:
        """Policy for the tool, or the default policy if it has none."""
        return self._policies.get(tool_name, self._default_policy)

    def is_allowed(self, tool_name: str, role: Role) -> bool:
        """Check if a role is allowed to call a tool."""
        if _role_value(role) == UserRole.ADMIN.value:
            return True

        return self.get_policy(tool_name).allows(role)

    def set_default_policy(self, allowed_roles: Iterable[Role]) -> None:
        self._default_policy = AccessPolicy(DEFAULT_POLICY_NAME, _ordered_roles(allowed_roles))

    def get_default_policy(self) -> AccessPolicy:
        return self._default_policy

    def get_all_policies(self) -> List[AccessPolicy]:
        """Tool-specific policies (the default is not included)."""
        with self._lock:
            return list(self._policies.values())

    def clear_policies(self) -> None:
        """Drop all tool-specific policies; the default stays."""
        with self._lock:
            self._policies.clear()

    def load_policies(self, config: Dict) -> int:
        """
        Load policies from a mapping:

            default: [admin, user]
            tools:
              delete_file: [admin]

        Returns number of tool policies loaded.
        """
        if "default" in config:
            self.set_default_policy(config["default"])

        count = 0
        for tool_name, roles in (config.get("tools") or {}).items():
            self.add_policy(tool_name, roles)
            count += 1

        self._logger.info(
            f"Loaded {count} tool policies, default={list(self._default_policy.allowed_roles)}"
        )
        return count

    def load_from_file(self, path: str) -> int:
        """Load policies from YAML. The file may nest them under a `policies` key."""
        config_path = Path(path)
        if not config_path.exists():
            self._logger.warning(f"Policy config not found: {config_path}")
            return 0

        with open(config_path, "r") as f:
            config = yaml.safe_load(f) or {}

        return self.load_policies(config.get("policies", config))
