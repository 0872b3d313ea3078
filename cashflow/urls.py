from django.urls import path

from .views import (
    AccountBalanceView,
    ApproveReturnRequestView,
    AssignmentListView,
    MarkNotificationsReadView,
    NotificationListView,
    RejectReturnRequestView,
    ReturnRequestListView,
)

urlpatterns = [
    path("accounts/<str:holder_id>/balance/", AccountBalanceView.as_view(), name="account-balance"),
    path("assignments/", AssignmentListView.as_view(), name="assignments"),
    path("return-requests/", ReturnRequestListView.as_view(), name="return-requests"),
    path("return-requests/<uuid:request_id>/approve/", ApproveReturnRequestView.as_view(), name="return-request-approve"),
    path("return-requests/<uuid:request_id>/reject/", RejectReturnRequestView.as_view(), name="return-request-reject"),
    path("notifications/", NotificationListView.as_view(), name="notifications"),
    path("notifications/mark-read/", MarkNotificationsReadView.as_view(), name="notifications-mark-read"),
]
