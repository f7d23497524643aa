"""
RBAC (Role-Based Access Control) application.

Provides organization-scoped access control with:
- A closed catalog of permission keys
- Additive roles, with the system role bypassing resolution
- Per-user grant and revoke overrides where revokes win
- An append-only audit trail of every policy change
"""
