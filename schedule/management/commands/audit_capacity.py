from django.core.management.base import BaseCommand
from django.db.models import Count, F, Q

from schedule.coordinator import CapacityCoordinator
from schedule.errors import BookingError
from schedule.models import Booking, Session


class Command(BaseCommand):
    help = "Сверить current_capacity занятий с числом подтверждённых записей"

    def add_arguments(self, parser):
        parser.add_argument(
            "--fix",
            action="store_true",
            help="Пересчитать счётчик у расходящихся занятий (под блокировкой занятия)",
        )

    def handle(self, *args, **options):
        mismatched = list(
            Session.objects
            .annotate(confirmed=Count("bookings", filter=Q(bookings__status=Booking.Status.CONFIRMED)))
            .exclude(confirmed=F("current_capacity"))
            .order_by("start_at")
        )

        if not mismatched:
            self.stdout.write(self.style.SUCCESS("All session counters match confirmed bookings"))
            return

        coordinator = CapacityCoordinator()
        failed = 0
        for s in mismatched:
            self.stdout.write(
                f"Session #{s.pk} {s.title}: current_capacity={s.current_capacity} confirmed={s.confirmed}"
            )
            if not options["fix"]:
                continue
            try:
                result = coordinator.reconcile(s.pk)
            except BookingError as exc:
                failed += 1
                self.stderr.write(self.style.ERROR(f"  not fixed: {exc.message}"))
                continue
            self.stdout.write(f"  fixed: {result['before']} -> {result['after']}")

        if options["fix"]:
            fixed = len(mismatched) - failed
            self.stdout.write(self.style.SUCCESS(f"Reconciled {fixed} of {len(mismatched)} sessions"))
        else:
            self.stdout.write(self.style.WARNING(f"{len(mismatched)} sessions out of sync (run with --fix)"))
