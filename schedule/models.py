import uuid

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from .choices import BookingStatus


class Trainer(models.Model):
    name = models.CharField("Имя", max_length=120)

    class Meta:
        verbose_name = "Тренер"
        verbose_name_plural = "Тренеры"

    def __str__(self) -> str:
        return self.name


class Session(models.Model):
    title = models.CharField("Название", max_length=160)

    trainer = models.ForeignKey(
        Trainer,
        verbose_name="Тренер",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="sessions",
    )
    location = models.CharField("Адрес", max_length=160, blank=True, default="")

    start_at = models.DateTimeField("Начало", db_index=True)
    end_at = models.DateTimeField("Окончание")

    max_capacity = models.PositiveIntegerField("Вместимость", default=20)
    # Меняется только через CapacityCoordinator (запись/отмена)
    current_capacity = models.PositiveIntegerField("Записано", default=0, editable=False)

    class Meta:
        verbose_name = "Занятие"
        verbose_name_plural = "Занятия"
        ordering = ["start_at"]
        constraints = [
            models.CheckConstraint(condition=Q(max_capacity__gt=0), name="sess_max_capacity_positive"),
            models.CheckConstraint(
                condition=Q(current_capacity__lte=F("max_capacity")),
                name="sess_capacity_within_max",
            ),
            models.CheckConstraint(condition=Q(start_at__lt=F("end_at")), name="sess_start_before_end"),
        ]

    def __str__(self) -> str:
        return f"{self.title} — {timezone.localtime(self.start_at).strftime('%d.%m %H:%M')}"

    def clean(self):
        super().clean()

        if self.start_at and self.end_at and self.start_at >= self.end_at:
            raise ValidationError({"end_at": "Окончание должно быть позже начала."})

        if self.max_capacity is not None and self.max_capacity < self.current_capacity:
            raise ValidationError({
                "max_capacity": f"Вместимость не может быть меньше числа записей ({self.current_capacity})."
            })

    @property
    def seats_left(self) -> int:
        return max(0, int(self.max_capacity) - int(self.current_capacity))

    @property
    def instructor_name(self) -> str:
        return self.trainer.name if self.trainer_id else ""


class Booking(models.Model):
    Status = BookingStatus

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    member = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        verbose_name="Клиент",
        on_delete=models.PROTECT,
        related_name="bookings",
    )
    session = models.ForeignKey(
        Session,
        verbose_name="Занятие",
        on_delete=models.PROTECT,
        related_name="bookings",
    )

    status = models.CharField(
        "Статус",
        max_length=16,
        choices=BookingStatus.choices,
        default=BookingStatus.CONFIRMED,
    )
    booking_time = models.DateTimeField("Время записи", default=timezone.now)
    notes = models.TextField("Комментарий", blank=True, default="")
    cancelled_at = models.DateTimeField("Отменено", null=True, blank=True)

    class Meta:
        verbose_name = "Запись"
        verbose_name_plural = "Записи"
        ordering = ["-booking_time"]
        constraints = [
            # не больше одной активной записи клиента на занятие
            models.UniqueConstraint(
                fields=["member", "session"],
                condition=Q(status="confirmed"),
                name="uniq_active_member_session",
            ),
        ]
        indexes = [
            models.Index(fields=["member", "status"], name="book_member_status_idx"),
            models.Index(fields=["session", "status"], name="book_sess_status_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.member} → {self.session} ({self.status})"
