from django.urls import path
from .views import (
    AcceptView,
    ClassifyView,
    CompleteView,
    DonationDetailView,
    DonationListView,
    EventsView,
    NotificationClearView,
    NotificationListView,
    NotificationReadView,
    ProfileView,
    ResyncView,
    StatsView,
)

app_name = "donations"

urlpatterns = [
    path("api/profile/", ProfileView.as_view(), name="profile"),
    path("api/donations/", DonationListView.as_view(), name="donations"),
    path("api/donations/<uuid:donation_id>/", DonationDetailView.as_view(), name="donation"),
    path("api/donations/<uuid:donation_id>/accept/", AcceptView.as_view(), name="accept"),
    path("api/donations/<uuid:donation_id>/complete/", CompleteView.as_view(), name="complete"),
    path("api/events/", EventsView.as_view(), name="events"),
    path("api/resync/", ResyncView.as_view(), name="resync"),
    path("api/stats/", StatsView.as_view(), name="stats"),
    path("api/notifications/", NotificationListView.as_view(), name="notifications"),
    path("api/notifications/read/", NotificationReadView.as_view(), name="notifications-read"),
    path("api/notifications/clear/", NotificationClearView.as_view(), name="notifications-clear"),
    path("api/classify/", ClassifyView.as_view(), name="classify"),
]
