from __future__ import annotations

from django.http import JsonResponse
from django.urls import include, path


def health(_request):
    return JsonResponse({"status": "ok"})


urlpatterns = [
    path("api/health/", health),
    path("api/briefing/", include("apps.briefing.urls")),
    path("api/ebooks/", include("apps.ebooks.urls")),
]
