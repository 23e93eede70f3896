"""
Django admin configuration for core app.
"""
from django.contrib import admin


# Customize admin site header and title
admin.site.site_header = "Welfare Administration"
admin.site.site_title = "Welfare Admin"
admin.site.index_title = "Schemes, applications and access control"
