from django.urls import include, path
from rest_framework.routers import DefaultRouter

from .views import ConversationViewSet, CredentialViewSet, TemplateViewSet

router = DefaultRouter()
router.register("templates", TemplateViewSet, basename="template")
router.register("conversation", ConversationViewSet, basename="conversation")
router.register("credential", CredentialViewSet, basename="credential")

urlpatterns = [
    path("", include(router.urls)),
]
