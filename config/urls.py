from django.urls import include, path

urlpatterns = [
    path("api/cashflow/", include("cashflow.urls")),
]
