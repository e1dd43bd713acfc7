from django.contrib import admin
from django.urls import path, include

admin.site.site_header = "Payments admin"
admin.site.site_title = "Payments"
admin.site.index_title = "Reconciliation"

urlpatterns = [
    path("admin/", admin.site.urls),
    path("payments/", include("payments.urls")),
]
