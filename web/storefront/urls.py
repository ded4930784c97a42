from django.urls import include, path

urlpatterns = [
    path("api/", include("apps.checkout.urls")),
    path("api/monitoring/", include("apps.monitoring.urls")),
]
