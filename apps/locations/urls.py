"""
Location API URLs.
"""
from django.urls import path
from apps.locations import views

urlpatterns = [
    path('', views.LocationListView.as_view(), name='location-list'),
]
