from django.db import models


class BookingStatus(models.TextChoices):
    # confirmed -> cancelled, обратного перехода нет
    CONFIRMED = "confirmed", "Подтверждена"
    CANCELLED = "cancelled", "Отменена"
