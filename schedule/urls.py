from django.urls import path
from . import views

app_name = "schedule"

urlpatterns = [
    path("api/bookings/", views.bookings, name="bookings"),
    path("api/bookings/<uuid:booking_id>/", views.booking_cancel, name="booking_cancel"),

    path("api/sessions/<int:session_id>/", views.session_detail, name="session_detail"),
    path("api/sessions/<int:session_id>/capacity/", views.session_capacity, name="session_capacity"),
]
