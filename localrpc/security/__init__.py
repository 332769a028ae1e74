# Security module - role-based access policies and authentication

from .access_control import AccessControlService, AccessPolicy, UserRole
from .auth import AuthService, User

__all__ = ["AccessControlService", "AccessPolicy", "UserRole", "AuthService", "User"]
