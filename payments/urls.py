from django.urls import path

from . import views
from .gateways import registered_gateways

app_name = "payments"
urlpatterns = [
    path(f"webhooks/{code}/", views.gateway_webhook, {"gateway": code}, name=f"{code}_webhook")
    for code in registered_gateways()
]
