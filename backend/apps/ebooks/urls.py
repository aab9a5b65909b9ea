from django.urls import include, path
from rest_framework.routers import DefaultRouter

from .views import ExportViewSet, ManuscriptViewSet

router = DefaultRouter()
router.register("manuscripts", ManuscriptViewSet, basename="manuscript")
router.register("exports", ExportViewSet, basename="export")

urlpatterns = [
    path("", include(router.urls)),
]
