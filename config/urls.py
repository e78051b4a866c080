from django.contrib import admin
from django.contrib.auth import views as auth_views
from django.urls import path, include
from django.views.generic import RedirectView

admin.site.site_header = "GymBook — Админка"
admin.site.site_title = "GymBook"
admin.site.index_title = "Управление"

urlpatterns = [
    path("admin/", admin.site.urls),
    # вход для клиентов тоже: форма админки, но без проверки is_staff
    path(
        "accounts/login/",
        auth_views.LoginView.as_view(
            template_name="admin/login.html",
            extra_context={"site_header": admin.site.site_header, "site_title": admin.site.site_title},
        ),
        name="login",
    ),
    path("accounts/logout/", auth_views.LogoutView.as_view(), name="logout"),
    path("schedule/", include("schedule.urls")),
    path("", RedirectView.as_view(url="/admin/", permanent=False)),
]
