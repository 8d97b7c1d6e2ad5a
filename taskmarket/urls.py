from django.urls import path

from slots.api import api

urlpatterns = [
    path("api/", api.urls),
]
