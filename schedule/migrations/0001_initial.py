import uuid

from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone
from django.conf import settings

class Migration(migrations.Migration):
    initial = True
    dependencies = [
        ("accounts", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]
    operations = [
        migrations.CreateModel(
            name="Trainer",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=120, verbose_name="Имя")),
            ],
            options={"verbose_name": "Тренер", "verbose_name_plural": "Тренеры"},
        ),
        migrations.CreateModel(
            name="Session",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("title", models.CharField(max_length=160, verbose_name="Название")),
                ("location", models.CharField(blank=True, default="", max_length=160, verbose_name="Адрес")),
                ("start_at", models.DateTimeField(db_index=True, verbose_name="Начало")),
                ("end_at", models.DateTimeField(verbose_name="Окончание")),
                ("max_capacity", models.PositiveIntegerField(default=20, verbose_name="Вместимость")),
                ("current_capacity", models.PositiveIntegerField(default=0, editable=False, verbose_name="Записано")),
                ("trainer", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name="sessions", to="schedule.trainer", verbose_name="Тренер")),
            ],
            options={
                "verbose_name": "Занятие",
                "verbose_name_plural": "Занятия",
                "ordering": ["start_at"],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("max_capacity__gt", 0)), name="sess_max_capacity_positive"),
                    models.CheckConstraint(condition=models.Q(("current_capacity__lte", models.F("max_capacity"))), name="sess_capacity_within_max"),
                    models.CheckConstraint(condition=models.Q(("start_at__lt", models.F("end_at"))), name="sess_start_before_end"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Booking",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("status", models.CharField(choices=[("confirmed", "Подтверждена"), ("cancelled", "Отменена")], default="confirmed", max_length=16, verbose_name="Статус")),
                ("booking_time", models.DateTimeField(default=django.utils.timezone.now, verbose_name="Время записи")),
                ("notes", models.TextField(blank=True, default="", verbose_name="Комментарий")),
                ("cancelled_at", models.DateTimeField(blank=True, null=True, verbose_name="Отменено")),
                ("member", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="bookings", to=settings.AUTH_USER_MODEL, verbose_name="Клиент")),
                ("session", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="bookings", to="schedule.session", verbose_name="Занятие")),
            ],
            options={
                "verbose_name": "Запись",
                "verbose_name_plural": "Записи",
                "ordering": ["-booking_time"],
                "constraints": [
                    models.UniqueConstraint(condition=models.Q(("status", "confirmed")), fields=("member", "session"), name="uniq_active_member_session"),
                ],
                "indexes": [
                    models.Index(fields=["member", "status"], name="book_member_status_idx"),
                    models.Index(fields=["session", "status"], name="book_sess_status_idx"),
                ],
            },
        ),
    ]
