"""
Authorization system.

Design principles:
1. One rule table (capabilities.py) decides which flag gates which action
2. One pure predicate (policies.can_perform) evaluates it
3. One gate (gate.py) enforces it at the request boundary and audits it
4. Mutation bodies pass through a field whitelist before storage
"""

from opsportal.auth.capabilities import (
    ADMIN_ONLY_FIELDS,
    FIELD_WHITELISTS,
    RULES,
    Action,
    ActionRule,
    Scope,
    get_capabilities,
    has_capability,
)
from opsportal.auth.context import AuthContext, Target, TargetRef
from opsportal.auth.gate import AuthorizationGate
from opsportal.auth.jwt import (
    AccessToken,
    create_access_token,
    decode_token,
    hash_password,
    verify_password,
)
from opsportal.auth.policies import (
    INSUFFICIENT_PROJECT_ACCESS,
    INSUFFICIENT_ROLE,
    NOT_ASSIGNED,
    Decision,
    allowed_fields,
    can_perform,
    project_fields,
    require,
    require_auth,
)
from opsportal.auth.routes import router as auth_router

__all__ = [
    # Main interface
    "require",
    "require_auth",
    "can_perform",
    "project_fields",
    "allowed_fields",
    "AuthContext",
    "AuthorizationGate",
    # Types
    "Action",
    "ActionRule",
    "Decision",
    "Scope",
    "Target",
    "TargetRef",
    "RULES",
    "FIELD_WHITELISTS",
    "ADMIN_ONLY_FIELDS",
    "get_capabilities",
    "has_capability",
    # Deny reasons
    "INSUFFICIENT_ROLE",
    "NOT_ASSIGNED",
    "INSUFFICIENT_PROJECT_ACCESS",
    # JWT
    "AccessToken",
    "create_access_token",
    "decode_token",
    "hash_password",
    "verify_password",
    # Router
    "auth_router",
]
