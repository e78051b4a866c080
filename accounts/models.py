from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    class Role(models.TextChoices):
        MEMBER = "member", "Клиент"
        INSTRUCTOR = "instructor", "Тренер"
        ADMIN = "admin", "Администратор"

    full_name = models.CharField("ФИО", max_length=255, blank=True)
    phone = models.CharField("Телефон", max_length=32, blank=True)
    role = models.CharField(
        "Роль",
        max_length=16,
        choices=Role.choices,
        default=Role.MEMBER,
        db_index=True,
    )

    def get_full_name(self):
        full_name = (self.full_name or "").strip()
        if full_name:
            return full_name

        legacy_full_name = " ".join(
            part.strip() for part in [self.first_name, self.last_name] if part and part.strip()
        ).strip()
        return legacy_full_name

    def get_short_name(self):
        full_name = self.get_full_name()
        if not full_name:
            return ""
        return full_name.split()[0]

    @property
    def effective_role(self) -> str:
        # staff/superuser из админки считаем администраторами
        if self.is_superuser or self.is_staff:
            return self.Role.ADMIN
        return self.role

    def __str__(self):
        return self.get_full_name() or self.phone or self.username or f"Клиент #{self.pk}"
