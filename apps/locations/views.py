"""
Location REST API views.
"""
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.pagination import PageNumberPagination
from drf_spectacular.utils import extend_schema, extend_schema_view, OpenApiParameter
from drf_spectacular.types import OpenApiTypes

from apps.locations.models import Location
from apps.locations.serializers import LocationSerializer


class LocationPagination(PageNumberPagination):
    page_size = 100
    page_size_query_param = 'page_size'
    max_page_size = 500


@extend_schema_view(
    get=extend_schema(
        tags=['Locations'],
        summary='List locations',
        description='''
List active locations of the administrative hierarchy.

Filter with `type` (state, district, area, unit) and `parent` (location id)
to walk the tree one level at a time.
        ''',
        parameters=[
            OpenApiParameter('type', OpenApiTypes.STR, description='Filter by location type'),
            OpenApiParameter('parent', OpenApiTypes.UUID, description='Filter by parent location id'),
        ],
        responses={200: LocationSerializer(many=True)},
    )
)
class LocationListView(APIView):
    """
    GET /v1/locations/

    List active locations, optionally filtered by type and parent.
    """

    def get(self, request):
        queryset = Location.objects.active().select_related('parent')

        location_type = request.query_params.get('type')
        if location_type:
            queryset = queryset.filter(type=location_type)

        parent = request.query_params.get('parent')
        if parent:
            queryset = queryset.filter(parent_id=parent)

        paginator = LocationPagination()
        page = paginator.paginate_queryset(queryset, request, view=self)
        serializer = LocationSerializer(page, many=True)
        return paginator.get_paginated_response(serializer.data)
