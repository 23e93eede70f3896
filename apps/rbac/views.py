"""
RBAC REST API views.

Implements endpoints for:
- Permission catalogue and the caller's effective permissions
- Role management (list, create, detail, update, delete)
- Role assignments (list, create, approve/reject, revoke, overrides)
- Audit log viewing
"""
from rest_framework import status
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.pagination import PageNumberPagination
from django.shortcuts import get_object_or_404
from drf_spectacular.utils import extend_schema, extend_schema_view, OpenApiParameter, OpenApiExample
from drf_spectacular.types import OpenApiTypes

from apps.core.exceptions import ScopeViolation
from apps.core.logging import SecurityLogger
from apps.core.middleware import get_client_ip
from apps.core.permissions import HasPermission, requires_permission
from apps.rbac.models import AuditLog, Permission, Role, UserRoleAssignment
from apps.rbac.resolver import PermissionResolver
from apps.rbac.scope import RegionalScopeFilter
from apps.rbac.serializers import (
    AssignmentCreateSerializer, AssignmentDecisionSerializer, AssignmentHistorySerializer,
    AssignmentOverrideSerializer, AssignmentRevokeSerializer, AssignmentSerializer,
    AuditLogSerializer, OverrideCreateSerializer, PermissionSerializer,
    ResolvedPermissionSerializer, RoleSerializer, RoleWriteSerializer,
)
from apps.rbac.services import RBACService


class StandardResultsSetPagination(PageNumberPagination):
    """Standard pagination for list endpoints."""
    page_size = 50
    page_size_query_param = 'page_size'
    max_page_size = 100


def _scoped_assignment(request, assignment_id, permission_name):
    """Fetch an assignment the caller may manage, or raise ScopeViolation."""
    assignment = get_object_or_404(
        UserRoleAssignment.objects.select_related('user', 'role'), id=assignment_id
    )
    if not RegionalScopeFilter.can_access(request.user, assignment, 'assignments', permission_name):
        SecurityLogger.log_scope_violation(
            request.user.id, 'role_assignment', assignment.id, ip_address=get_client_ip(request)
        )
        raise ScopeViolation('This assignment is outside your scope.')
    return assignment


# ===== PERMISSIONS =====

@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Permissions'],
        summary='List permissions',
        description='''
List the permission catalogue with conditions and dependencies.

**Required permission:** `permissions.read`
        ''',
        parameters=[
            OpenApiParameter('module', OpenApiTypes.STR, description='Filter by module'),
            OpenApiParameter('scope', OpenApiTypes.STR, description='Filter by scope'),
        ],
        responses={200: PermissionSerializer(many=True)},
    )
)
@requires_permission('permissions.read')
class PermissionListView(APIView):
    """
    GET /v1/rbac/permissions

    List all active permissions, optionally filtered by module and scope.
    """

    permission_classes = [HasPermission]
    pagination_class = StandardResultsSetPagination

    def get(self, request):
        permissions = Permission.objects.active().prefetch_related('requires', 'implies', 'conflicts')

        module = request.query_params.get('module')
        if module:
            permissions = permissions.filter(module=module)

        scope = request.query_params.get('scope')
        if scope:
            permissions = permissions.filter(scope=scope)

        paginator = self.pagination_class()
        page = paginator.paginate_queryset(permissions, request)
        serializer = PermissionSerializer(page, many=True)
        return paginator.get_paginated_response(serializer.data)


@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Permissions'],
        summary='Get my effective permissions',
        description='''
Get the caller's effective permission set and scope.

The set is resolved fresh from the caller's valid role assignments,
including per-assignment grants/restrictions and the dependency closure
(implied permissions added, unmet requirements and conflict losers dropped).

**No permission required** - users can always see their own permissions.
        ''',
        responses={200: OpenApiTypes.OBJECT},
        examples=[
            OpenApiExample(
                'Success Response',
                value={
                    'permissions': [
                        {
                            'name': 'applications.approve',
                            'module': 'applications',
                            'action': 'approve',
                            'scope': 'regional',
                            'security_level': 'confidential',
                            'audit_required': True,
                            'role_level': 4
                        }
                    ],
                    'scope': {
                        'global': False,
                        'regions': ['123e4567-e89b-12d3-a456-426614174000'],
                        'projects': [],
                        'schemes': []
                    }
                },
                response_only=True
            )
        ]
    )
)
class MyPermissionsView(APIView):
    """
    GET /v1/rbac/me/permissions

    Effective permissions and scope of the authenticated user.
    """

    def get(self, request):
        permissions = sorted(
            PermissionResolver.get_effective_permissions(request.user),
            key=lambda permission: permission.name
        )
        return Response({
            'permissions': ResolvedPermissionSerializer(permissions, many=True).data,
            'scope': RegionalScopeFilter.describe_scope(request.user),
        })


# ===== ROLES =====

@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Roles'],
        summary='List roles',
        description='''
List roles ordered by level (highest privilege first).

**Required permission:** `roles.read`
        ''',
        parameters=[
            OpenApiParameter('type', OpenApiTypes.STR, description='Filter by role type: system or custom'),
            OpenApiParameter('include_permissions', OpenApiTypes.BOOL, description='Include permission names'),
        ],
        responses={200: RoleSerializer(many=True)},
    ),
    post=extend_schema(
        tags=['RBAC - Roles'],
        summary='Create custom role',
        description='''
Create a custom role. System roles cannot be created via API, and custom
roles can neither sit at level 0 nor bypass regional scope.

**Required permission:** `roles.create`
        ''',
        request=RoleWriteSerializer,
        responses={201: RoleSerializer, 400: OpenApiTypes.OBJECT, 403: OpenApiTypes.OBJECT},
    ),
)
class RoleListView(APIView):
    """
    GET /v1/rbac/roles
    POST /v1/rbac/roles
    """

    permission_classes = [HasPermission]
    pagination_class = StandardResultsSetPagination

    @requires_permission('roles.read')
    def get(self, request):
        roles = Role.objects.all()

        role_type = request.query_params.get('type')
        if role_type == 'system':
            roles = roles.filter(is_system=True)
        elif role_type == 'custom':
            roles = roles.filter(is_system=False)

        paginator = self.pagination_class()
        page = paginator.paginate_queryset(roles, request)
        serializer = RoleSerializer(
            page,
            many=True,
            context={'include_permissions': request.query_params.get('include_permissions') == 'true'}
        )
        return paginator.get_paginated_response(serializer.data)

    @requires_permission('roles.create')
    def post(self, request):
        serializer = RoleWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        data = dict(serializer.validated_data)
        permission_names = data.pop('permissions', [])
        role = RBACService.create_custom_role(data, created_by=request.user, permission_names=permission_names)

        return Response(
            RoleSerializer(role, context={'include_permissions': True}).data,
            status=status.HTTP_201_CREATED
        )


@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Roles'],
        summary='Get role details',
        description='**Required permission:** `roles.read`',
        responses={200: RoleSerializer, 404: OpenApiTypes.OBJECT},
    ),
    patch=extend_schema(
        tags=['RBAC - Roles'],
        summary='Update role',
        description='''
Update a modifiable role. Passing `permissions` replaces the role's grants.

**Required permission:** `roles.update`
        ''',
        request=RoleWriteSerializer,
        responses={200: RoleSerializer, 400: OpenApiTypes.OBJECT, 403: OpenApiTypes.OBJECT},
    ),
    delete=extend_schema(
        tags=['RBAC - Roles'],
        summary='Delete role',
        description='''
Soft-delete a deletable role. Roles with active assignments cannot be deleted.

**Required permission:** `roles.delete`
        ''',
        responses={204: None, 400: OpenApiTypes.OBJECT, 403: OpenApiTypes.OBJECT},
    ),
)
class RoleDetailView(APIView):
    """
    GET /v1/rbac/roles/{id}
    PATCH /v1/rbac/roles/{id}
    DELETE /v1/rbac/roles/{id}
    """

    permission_classes = [HasPermission]

    @requires_permission('roles.read')
    def get(self, request, role_id):
        role = get_object_or_404(Role, id=role_id)
        return Response(RoleSerializer(role, context={'include_permissions': True}).data)

    @requires_permission('roles.update')
    def patch(self, request, role_id):
        role = get_object_or_404(Role, id=role_id)
        serializer = RoleWriteSerializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)

        data = dict(serializer.validated_data)
        data.pop('name', None)
        permission_names = data.pop('permissions', None)
        role = RBACService.update_custom_role(
            role, data, updated_by=request.user, permission_names=permission_names
        )
        return Response(RoleSerializer(role, context={'include_permissions': True}).data)

    @requires_permission('roles.delete')
    def delete(self, request, role_id):
        role = get_object_or_404(Role, id=role_id)
        RBACService.delete_custom_role(role, deleted_by=request.user)
        return Response(status=status.HTTP_204_NO_CONTENT)


# ===== ASSIGNMENTS =====

@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Assignments'],
        summary='List role assignments',
        description='''
List role assignments whose regions fall inside the caller's scope.

**Required permission:** `roles.assign`
        ''',
        parameters=[
            OpenApiParameter('user_id', OpenApiTypes.UUID, description='Filter by user'),
            OpenApiParameter('role', OpenApiTypes.STR, description='Filter by role name'),
            OpenApiParameter('status', OpenApiTypes.STR, description='Filter by approval status'),
            OpenApiParameter('active', OpenApiTypes.BOOL, description='Only active assignments'),
        ],
        responses={200: AssignmentSerializer(many=True)},
    ),
    post=extend_schema(
        tags=['RBAC - Assignments'],
        summary='Assign role',
        description='''
Assign a role to a user within a scope. The caller must outrank the role
and every requested region must be inside the caller's own scope. Roles
that require approval create a `pending` assignment.

**Required permission:** `roles.assign`
        ''',
        request=AssignmentCreateSerializer,
        responses={201: AssignmentSerializer, 400: OpenApiTypes.OBJECT, 403: OpenApiTypes.OBJECT},
        examples=[
            OpenApiExample(
                'Assign Unit Admin',
                value={
                    'user_id': '123e4567-e89b-12d3-a456-426614174002',
                    'role_id': '123e4567-e89b-12d3-a456-426614174003',
                    'regions': ['123e4567-e89b-12d3-a456-426614174004'],
                    'reason': 'New unit coordinator'
                },
                request_only=True
            )
        ]
    ),
)
@requires_permission('roles.assign')
class AssignmentListView(APIView):
    """
    GET /v1/rbac/assignments
    POST /v1/rbac/assignments
    """

    permission_classes = [HasPermission]
    pagination_class = StandardResultsSetPagination

    def get(self, request):
        assignments = RegionalScopeFilter.apply(
            request.user,
            UserRoleAssignment.objects.select_related('user', 'role', 'assigned_by', 'approved_by')
            .prefetch_related('regions'),
            'assignments',
            'roles.assign',
        ).distinct()

        user_id = request.query_params.get('user_id')
        if user_id:
            assignments = assignments.filter(user_id=user_id)

        role = request.query_params.get('role')
        if role:
            assignments = assignments.filter(role__name=role)

        approval_status = request.query_params.get('status')
        if approval_status:
            assignments = assignments.filter(approval_status=approval_status)

        if request.query_params.get('active') == 'true':
            assignments = assignments.filter(is_active=True)

        assignments = assignments.order_by('-created_at')

        paginator = self.pagination_class()
        page = paginator.paginate_queryset(assignments, request)
        serializer = AssignmentSerializer(page, many=True)
        return paginator.get_paginated_response(serializer.data)

    def post(self, request):
        serializer = AssignmentCreateSerializer(data=request.data, context={})
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        allowed_regions = RegionalScopeFilter.region_ids_for(request.user, 'roles.assign')
        requested = {str(region_id) for region_id in data['regions']}
        if allowed_regions is not None and not requested <= allowed_regions:
            SecurityLogger.log_scope_violation(
                request.user.id, 'location', ','.join(sorted(requested - allowed_regions)),
                ip_address=get_client_ip(request)
            )
            raise ScopeViolation('One or more regions are outside your scope.')

        assignment = RBACService.assign_role(
            user=serializer.context['user'],
            role=serializer.context['role'],
            assigned_by=request.user,
            scope={
                'regions': data['regions'],
                'projects': data['projects'],
                'schemes': data['schemes'],
            },
            valid_from=data.get('valid_from'),
            valid_until=data.get('valid_until'),
            reason=data['reason'],
            is_primary=data.get('is_primary'),
        )
        return Response(AssignmentSerializer(assignment).data, status=status.HTTP_201_CREATED)


@extend_schema_view(
    post=extend_schema(
        tags=['RBAC - Assignments'],
        summary='Approve or reject a pending assignment',
        description='''
Decide a pending assignment. The approver must outrank the role and be
neither the assignee nor the user who made the assignment.

**Required permission:** `roles.assign`
        ''',
        request=AssignmentDecisionSerializer,
        responses={200: AssignmentSerializer, 400: OpenApiTypes.OBJECT, 403: OpenApiTypes.OBJECT},
    )
)
@requires_permission('roles.assign')
class AssignmentApproveView(APIView):
    """
    POST /v1/rbac/assignments/{id}/approve
    """

    permission_classes = [HasPermission]

    def post(self, request, assignment_id):
        assignment = _scoped_assignment(request, assignment_id, 'roles.assign')
        serializer = AssignmentDecisionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        if serializer.validated_data['decision'] == 'approve':
            assignment = RBACService.approve_assignment(
                assignment, approved_by=request.user, reason=serializer.validated_data['reason']
            )
        else:
            assignment = RBACService.reject_assignment(
                assignment, rejected_by=request.user, reason=serializer.validated_data['reason']
            )
        return Response(AssignmentSerializer(assignment).data)


@extend_schema_view(
    post=extend_schema(
        tags=['RBAC - Assignments'],
        summary='Revoke an assignment',
        description='''
Deactivate and revoke an assignment. The record and its history are kept.

**Required permission:** `roles.assign`
        ''',
        request=AssignmentRevokeSerializer,
        responses={200: AssignmentSerializer, 400: OpenApiTypes.OBJECT, 403: OpenApiTypes.OBJECT},
    )
)
@requires_permission('roles.assign')
class AssignmentRevokeView(APIView):
    """
    POST /v1/rbac/assignments/{id}/revoke
    """

    permission_classes = [HasPermission]

    def post(self, request, assignment_id):
        assignment = _scoped_assignment(request, assignment_id, 'roles.assign')
        serializer = AssignmentRevokeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        assignment = RBACService.revoke_assignment(
            assignment, revoked_by=request.user, reason=serializer.validated_data['reason']
        )
        return Response(AssignmentSerializer(assignment).data)


@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Assignments'],
        summary='Get assignment history',
        description='**Required permission:** `roles.assign`',
        responses={200: AssignmentHistorySerializer(many=True)},
    )
)
@requires_permission('roles.assign')
class AssignmentHistoryView(APIView):
    """
    GET /v1/rbac/assignments/{id}/history
    """

    permission_classes = [HasPermission]

    def get(self, request, assignment_id):
        assignment = _scoped_assignment(request, assignment_id, 'roles.assign')
        entries = assignment.history.select_related('performed_by')
        return Response(AssignmentHistorySerializer(entries, many=True).data)


@extend_schema_view(
    post=extend_schema(
        tags=['RBAC - Assignments'],
        summary='Grant or restrict a permission on an assignment',
        description='''
Add a permission the role does not carry (`granted: true`) or withhold one it
does (`granted: false`), optionally until `expires_at`. A later override for
the same permission replaces the earlier one.

**Required permission:** `permissions.manage`
        ''',
        request=OverrideCreateSerializer,
        responses={201: AssignmentOverrideSerializer, 400: OpenApiTypes.OBJECT, 403: OpenApiTypes.OBJECT},
    )
)
@requires_permission('permissions.manage')
class AssignmentOverrideView(APIView):
    """
    POST /v1/rbac/assignments/{id}/overrides
    """

    permission_classes = [HasPermission]

    def post(self, request, assignment_id):
        assignment = _scoped_assignment(request, assignment_id, 'permissions.manage')
        serializer = OverrideCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        if data['granted']:
            override = RBACService.grant_additional_permission(
                assignment, data['permission'], granted_by=request.user,
                reason=data['reason'], expires_at=data['expires_at'],
            )
        else:
            override = RBACService.restrict_permission(
                assignment, data['permission'], restricted_by=request.user,
                reason=data['reason'], expires_at=data['expires_at'],
            )
        return Response(AssignmentOverrideSerializer(override).data, status=status.HTTP_201_CREATED)


# ===== AUDIT LOGS =====

@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Audit Logs'],
        summary='List audit logs',
        description='''
List audit log entries, newest first.

**Required permission:** `audit.read`
        ''',
        parameters=[
            OpenApiParameter('action', OpenApiTypes.STR, description='Filter by action'),
            OpenApiParameter('target_type', OpenApiTypes.STR, description='Filter by target type'),
            OpenApiParameter('target_id', OpenApiTypes.STR, description='Filter by target id'),
            OpenApiParameter('user_id', OpenApiTypes.UUID, description='Filter by acting user'),
            OpenApiParameter('request_id', OpenApiTypes.STR, description='Filter by request id'),
            OpenApiParameter('from_date', OpenApiTypes.DATETIME, description='Created at or after'),
            OpenApiParameter('to_date', OpenApiTypes.DATETIME, description='Created at or before'),
        ],
        responses={200: AuditLogSerializer(many=True)},
    )
)
@requires_permission('audit.read')
class AuditLogListView(APIView):
    """
    GET /v1/rbac/audit-logs

    Supports filtering by action, target, user, request id and date range.
    """

    permission_classes = [HasPermission]
    pagination_class = StandardResultsSetPagination

    def get(self, request):
        logs = AuditLog.objects.select_related('user')

        action = request.query_params.get('action')
        if action:
            logs = logs.filter(action=action)

        target_type = request.query_params.get('target_type')
        if target_type:
            logs = logs.filter(target_type=target_type)

        target_id = request.query_params.get('target_id')
        if target_id:
            logs = logs.filter(target_id=target_id)

        user_id = request.query_params.get('user_id')
        if user_id:
            logs = logs.filter(user_id=user_id)

        request_id = request.query_params.get('request_id')
        if request_id:
            logs = logs.filter(request_id=request_id)

        from_date = request.query_params.get('from_date')
        if from_date:
            logs = logs.filter(created_at__gte=from_date)

        to_date = request.query_params.get('to_date')
        if to_date:
            logs = logs.filter(created_at__lte=to_date)

        logs = logs.order_by('-created_at')

        paginator = self.pagination_class()
        page = paginator.paginate_queryset(logs, request)
        serializer = AuditLogSerializer(page, many=True)
        return paginator.get_paginated_response(serializer.data)
