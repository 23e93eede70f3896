"""
Application API URLs.
"""
from django.urls import path
from apps.applications.views import (
    ApplicationListView,
    ApplicationDetailView,
    ApplicationTransitionView,
    ApplicationHistoryView,
)

app_name = 'applications'

urlpatterns = [
    path('', ApplicationListView.as_view(), name='application-list'),
    path('<str:application_id>', ApplicationDetailView.as_view(), name='application-detail'),
    path('<str:application_id>/transition', ApplicationTransitionView.as_view(), name='application-transition'),
    path('<str:application_id>/history', ApplicationHistoryView.as_view(), name='application-history'),
]
