"""
Application REST API views.

Implements endpoints for:
- Listing (scope-filtered) and submitting applications
- Application detail and approval trail
- Workflow transitions (approve, forward, reject, return, cancel)
"""
from rest_framework import status
from rest_framework.views import APIView
from rest_framework.response import Response
from django.shortcuts import get_object_or_404
from drf_spectacular.utils import extend_schema, extend_schema_view, OpenApiParameter, OpenApiExample
from drf_spectacular.types import OpenApiTypes

from apps.applications.models import Application
from apps.applications.serializers import (
    ApplicationCreateSerializer, ApplicationDetailSerializer, ApplicationSerializer,
    ApprovalEntrySerializer, TransitionSerializer,
)
from apps.applications.workflow import ApplicationWorkflow
from apps.core.permissions import HasPermission, requires_permission
from apps.rbac.access import AccessContext
from apps.rbac.scope import RegionalScopeFilter
from apps.rbac.views import StandardResultsSetPagination


READ_PERMISSIONS = (
    'applications.read.all',
    'applications.read.regional',
    'applications.read.assigned',
    'applications.read.own',
)


def _scoped_applications(request):
    """Applications visible to the caller."""
    queryset = Application.objects.select_related(
        'applicant', 'state', 'district', 'area', 'unit'
    )
    return RegionalScopeFilter.apply(request.user, queryset, 'applications').distinct()


def _get_scoped_application(request, application_id):
    # Out-of-scope applications are reported as missing
    return get_object_or_404(_scoped_applications(request), application_id=application_id)


@extend_schema_view(
    get=extend_schema(
        tags=['Applications'],
        summary='List applications',
        description='''
List applications within the caller's scope, newest first.

Regional staff see applications in their regions (including descendant
regions), coordinators see their projects and schemes, beneficiaries see
their own applications.

**Required permission:** any `applications.read.*`
        ''',
        parameters=[
            OpenApiParameter('status', OpenApiTypes.STR, description='Filter by status'),
            OpenApiParameter('current_level', OpenApiTypes.STR, description='Filter by review level'),
            OpenApiParameter('sla_status', OpenApiTypes.STR, description='Filter by SLA status'),
            OpenApiParameter('scheme_id', OpenApiTypes.STR, description='Filter by scheme'),
            OpenApiParameter('project_id', OpenApiTypes.STR, description='Filter by project'),
        ],
        responses={200: ApplicationSerializer(many=True)},
    ),
    post=extend_schema(
        tags=['Applications'],
        summary='Submit application',
        description='''
Submit an application. It starts `pending` at the `unit_admin` level.

**Required permission:** `applications.create`
        ''',
        request=ApplicationCreateSerializer,
        responses={201: ApplicationDetailSerializer, 400: OpenApiTypes.OBJECT, 403: OpenApiTypes.OBJECT},
    ),
)
class ApplicationListView(APIView):
    """
    GET /v1/applications
    POST /v1/applications
    """

    permission_classes = [HasPermission]
    pagination_class = StandardResultsSetPagination

    @requires_permission(*READ_PERMISSIONS, any_of=True)
    def get(self, request):
        applications = _scoped_applications(request)

        for field in ('status', 'current_level', 'sla_status', 'scheme_id', 'project_id'):
            value = request.query_params.get(field)
            if value:
                applications = applications.filter(**{field: value})

        paginator = self.pagination_class()
        page = paginator.paginate_queryset(applications.order_by('-submitted_at'), request)
        serializer = ApplicationSerializer(page, many=True)
        return paginator.get_paginated_response(serializer.data)

    def post(self, request):
        serializer = ApplicationCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        # applications.create is checked by the workflow
        application = ApplicationWorkflow.submit(
            request.user, serializer.validated_data, AccessContext.from_request(request)
        )
        return Response(ApplicationDetailSerializer(application).data, status=status.HTTP_201_CREATED)


@extend_schema_view(
    get=extend_schema(
        tags=['Applications'],
        summary='Get application',
        description='''
Get an application with its approval trail. Applications outside the
caller's scope are reported as not found.

**Required permission:** any `applications.read.*`
        ''',
        responses={200: ApplicationDetailSerializer, 404: OpenApiTypes.OBJECT},
    )
)
@requires_permission(*READ_PERMISSIONS, any_of=True)
class ApplicationDetailView(APIView):
    """
    GET /v1/applications/{application_id}
    """

    permission_classes = [HasPermission]

    def get(self, request, application_id):
        application = _get_scoped_application(request, application_id)
        return Response(ApplicationDetailSerializer(application).data)


@extend_schema_view(
    post=extend_schema(
        tags=['Applications'],
        summary='Transition application',
        description='''
Apply a workflow action to an application.

Actions:
- `approve`: advance to the next level, or approve at `state_admin`
- `forward`: advance to the next level (remarks required)
- `reject`: reject (final)
- `return`: send back to the previous level
- `cancel`: withdraw (applicant only)

Pass `request_id` (or an `X-Request-ID` header) so a retried request does not
repeat the transition, and `expected_version` to fail fast when the
application changed since it was read.

**Required permission:** `applications.approve` (approve/forward/reject),
`applications.update.regional` (return) or `applications.cancel.own` (cancel),
plus a role reviewing at the application's current level.
        ''',
        request=TransitionSerializer,
        responses={
            200: ApplicationDetailSerializer,
            403: OpenApiTypes.OBJECT,
            409: OpenApiTypes.OBJECT,
            429: OpenApiTypes.OBJECT,
        },
        examples=[
            OpenApiExample(
                'Approve',
                value={
                    'action': 'approve',
                    'remarks': 'Documents verified',
                    'request_id': 'c0a8012e-approve-1',
                    'level': 'unit_admin',
                    'expected_version': 1
                },
                request_only=True
            ),
            OpenApiExample(
                'Concurrent modification',
                value={
                    'error': 'Application was modified by another request.',
                    'code': 'CONCURRENT_MODIFICATION',
                    'request_id': 'c0a8012e-approve-1'
                },
                response_only=True,
                status_codes=['409']
            )
        ]
    )
)
class ApplicationTransitionView(APIView):
    """
    POST /v1/applications/{application_id}/transition
    """

    def post(self, request, application_id):
        serializer = TransitionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        application = ApplicationWorkflow.transition(
            application_id,
            data['action'],
            request.user,
            remarks=data['remarks'],
            request_id=data['request_id'],
            level=data['level'],
            expected_version=data['expected_version'],
            comments=data['comments'],
            context=AccessContext.from_request(request),
        )
        return Response(ApplicationDetailSerializer(application).data)


@extend_schema_view(
    get=extend_schema(
        tags=['Applications'],
        summary='Get approval trail',
        description='''
Get the approval trail of an application, oldest entry first.

**Required permission:** any `applications.read.*`
        ''',
        responses={200: ApprovalEntrySerializer(many=True), 404: OpenApiTypes.OBJECT},
    )
)
@requires_permission(*READ_PERMISSIONS, any_of=True)
class ApplicationHistoryView(APIView):
    """
    GET /v1/applications/{application_id}/history
    """

    permission_classes = [HasPermission]

    def get(self, request, application_id):
        application = _get_scoped_application(request, application_id)
        entries = application.approval_entries.select_related('assigned_to').order_by('sequence')
        return Response(ApprovalEntrySerializer(entries, many=True).data)
