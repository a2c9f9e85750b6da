from django.urls import include, path

from voting import views_health

urlpatterns = [
    path("healthz", views_health.healthz, name="healthz"),
    path("readyz", views_health.readyz, name="readyz"),
    path("api/votings/", include("voting.urls")),
]
