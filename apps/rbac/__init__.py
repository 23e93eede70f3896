"""
RBAC (Role-Based Access Control) application.

Provides:
- Email-based user identity
- Hierarchical roles with regional, project and scheme scoped assignments
- Permissions with runtime conditions and a requires/implies/conflicts graph
- Per-assignment permission grants and restrictions
- Comprehensive audit logging
"""
