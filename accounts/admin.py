from django.contrib import admin
from django.contrib.auth.admin import UserAdmin
from .models import User

@admin.register(User)
class CustomUserAdmin(UserAdmin):
    fieldsets = UserAdmin.fieldsets + (
        ("Профиль", {"fields": ("full_name", "phone", "role")}),
    )
    list_display = ("id", "username", "full_name", "phone", "role", "is_staff")
    list_filter = UserAdmin.list_filter + ("role",)
    search_fields = ("username", "full_name", "phone", "email")
