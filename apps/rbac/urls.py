"""
RBAC API URLs.

Provides endpoints for:
- Permission catalogue and effective permissions
- Role management
- Role assignments, approvals, revocations and overrides
- Audit log viewing
"""
from django.urls import path
from apps.rbac.views import (
    PermissionListView,
    MyPermissionsView,
    RoleListView,
    RoleDetailView,
    AssignmentListView,
    AssignmentApproveView,
    AssignmentRevokeView,
    AssignmentHistoryView,
    AssignmentOverrideView,
    AuditLogListView,
)

app_name = 'rbac'

urlpatterns = [
    # Permission endpoints
    path('permissions', PermissionListView.as_view(), name='permission-list'),
    path('me/permissions', MyPermissionsView.as_view(), name='my-permissions'),

    # Role endpoints
    path('roles', RoleListView.as_view(), name='role-list'),
    path('roles/<uuid:role_id>', RoleDetailView.as_view(), name='role-detail'),

    # Assignment endpoints
    path('assignments', AssignmentListView.as_view(), name='assignment-list'),
    path('assignments/<uuid:assignment_id>/approve', AssignmentApproveView.as_view(), name='assignment-approve'),
    path('assignments/<uuid:assignment_id>/revoke', AssignmentRevokeView.as_view(), name='assignment-revoke'),
    path('assignments/<uuid:assignment_id>/history', AssignmentHistoryView.as_view(), name='assignment-history'),
    path('assignments/<uuid:assignment_id>/overrides', AssignmentOverrideView.as_view(), name='assignment-overrides'),

    # Audit log endpoint
    path('audit-logs', AuditLogListView.as_view(), name='audit-log-list'),
]
