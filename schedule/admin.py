from django.contrib import admin, messages
from django.http import HttpResponseRedirect

from accounts.principal import Principal

from .coordinator import CapacityCoordinator
from .errors import BookingError
from .models import Trainer, Session, Booking


@admin.register(Trainer)
class TrainerAdmin(admin.ModelAdmin):
    search_fields = ("name",)
    list_display = ("id", "name")
    ordering = ("name", "id")


class BookingInline(admin.TabularInline):
    model = Booking
    extra = 0
    can_delete = False
    readonly_fields = ("member", "status", "booking_time", "cancelled_at", "notes")
    fields = readonly_fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Session)
class SessionAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "start_at",
        "title",
        "trainer",
        "location",
        "current_capacity",
        "max_capacity",
        "seats_left",
    )
    list_filter = ("location", "trainer")
    search_fields = ("title", "location", "trainer__name")
    autocomplete_fields = ("trainer",)
    readonly_fields = ("current_capacity",)
    ordering = ("start_at",)
    inlines = (BookingInline,)

    def save_model(self, request, obj, form, change):
        if not change:
            super().save_model(request, obj, form, change)
            return

        # current_capacity из формы мог устареть: пишем только изменённые поля,
        # а вместимость меняем под блокировкой занятия
        fields = [f for f in form.changed_data if f != "max_capacity"]
        if fields:
            obj.save(update_fields=fields)

        if "max_capacity" in form.changed_data:
            try:
                updated = CapacityCoordinator().change_capacity(
                    Principal.from_user(request.user), obj.pk, obj.max_capacity
                )
            except BookingError as exc:
                obj._capacity_error = exc.message
                messages.error(request, exc.message)
            else:
                obj.current_capacity = updated.current_capacity

    def response_change(self, request, obj):
        if getattr(obj, "_capacity_error", None):
            # вместимость не сохранилась: остаёмся на форме без "успешно изменено"
            return HttpResponseRedirect(request.path)
        return super().response_change(request, obj)

    def delete_model(self, request, obj):
        if obj.bookings.exists():
            messages.error(request, "Нельзя удалить занятие с историей записей")
            return
        super().delete_model(request, obj)

    def delete_queryset(self, request, queryset):
        super().delete_queryset(request, queryset.filter(bookings__isnull=True))


@admin.register(Booking)
class BookingAdmin(admin.ModelAdmin):
    list_display = ("id", "member", "session", "status", "booking_time", "cancelled_at")
    list_filter = ("status", "session__location")
    search_fields = ("member__full_name", "member__phone", "member__username", "session__title")
    readonly_fields = ("id", "member", "session", "status", "booking_time", "cancelled_at")
    fields = ("id", "member", "session", "status", "booking_time", "cancelled_at", "notes")
    actions = ("cancel_bookings",)

    def has_add_permission(self, request):
        # записи создаются только через CapacityCoordinator
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def save_model(self, request, obj, form, change):
        if not change:
            super().save_model(request, obj, form, change)
            return
        # статус и время отмены пишет только CapacityCoordinator
        obj.save(update_fields=["notes"])

    @admin.action(description="Отменить выбранные записи")
    def cancel_bookings(self, request, queryset):
        coordinator = CapacityCoordinator()
        principal = Principal.from_user(request.user)
        done = 0
        for booking_id in queryset.values_list("id", flat=True):
            try:
                coordinator.cancel_booking(principal, booking_id)
            except BookingError as exc:
                messages.warning(request, f"{booking_id}: {exc.message}")
                continue
            done += 1
        if done:
            messages.success(request, f"Отменено записей: {done}")
