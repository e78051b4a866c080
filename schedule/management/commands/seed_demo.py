from datetime import timedelta

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.utils import timezone

from schedule.models import Trainer, Session


class Command(BaseCommand):
    help = "Seed demo data (safe to re-run)"

    def handle(self, *args, **options):
        trainer, _ = Trainer.objects.get_or_create(name="Совина Елена")

        now = timezone.localtime()
        start_at = (now + timedelta(days=1)).replace(hour=11, minute=0, second=0, microsecond=0)

        Session.objects.get_or_create(
            title="Плоский живот",
            start_at=start_at,
            trainer=trainer,
            defaults={"end_at": start_at + timedelta(minutes=50), "location": "Зал 1", "max_capacity": 18},
        )
        Session.objects.get_or_create(
            title="Пилатес",
            start_at=start_at + timedelta(hours=2),
            trainer=trainer,
            defaults={"end_at": start_at + timedelta(hours=3), "location": "Зал 2", "max_capacity": 2},
        )

        user_model = get_user_model()
        for username in ("member1", "member2"):
            if not user_model.objects.filter(username=username).exists():
                user_model.objects.create_user(username=username, password="pass12345", role="member")

        self.stdout.write(self.style.SUCCESS("Demo data ensured"))
