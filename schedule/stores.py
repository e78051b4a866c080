"""Storage facades for sessions and bookings.

``BookingStore`` is the contract the capacity coordinator is written
against: one all-or-nothing transaction (``atomic``) and exclusive row
access (``exclusive_session`` / ``exclusive_booking`` / ``lock_session``)
that is held until the transaction commits or rolls back. Everything that
mutates ``Session.current_capacity`` or ``Booking.status`` happens inside
such a transaction.

``DjangoBookingStore`` implements it with ``transaction.atomic`` and
``select_for_update``; ``schedule.memory.InMemoryBookingStore`` is the
thread-safe fake used in tests.
"""
from __future__ import annotations

import logging
import math
from contextlib import contextmanager

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import IntegrityError, InterfaceError, OperationalError, connections, transaction

from .choices import BookingStatus
from .errors import Conflict, NotFound, Unavailable
from .models import Booking, Session


logger = logging.getLogger(__name__)


def default_lock_timeout() -> float:
    return float(getattr(settings, "BOOKING_LOCK_TIMEOUT_SECONDS", 5) or 5)


def as_int(value):
    """Integer from an int or a string of digits; None for anything else (floats included)."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return None


class BookingStore:
    """Session Store + Booking Ledger. Subclasses provide the primitives."""

    @contextmanager
    def exclusive_session(self, session_id):
        with self.atomic():
            yield self.lock_session(session_id)

    @contextmanager
    def exclusive_booking(self, booking_id):
        with self.atomic():
            yield self.lock_booking(booking_id)

    def atomic(self):
        raise NotImplementedError

    def lock_session(self, session_id):
        raise NotImplementedError

    def lock_booking(self, booking_id):
        raise NotImplementedError

    def has_active_booking(self, member_id, session_id) -> bool:
        raise NotImplementedError

    def count_confirmed(self, session_id) -> int:
        raise NotImplementedError

    def save_session(self, session) -> None:
        raise NotImplementedError

    def add_booking(self, *, session, member_id, notes: str, booking_time):
        raise NotImplementedError

    def save_booking(self, booking) -> None:
        raise NotImplementedError

    def get_session(self, session_id):
        raise NotImplementedError

    def list_bookings(self, *, member_id=None) -> list:
        raise NotImplementedError


class DjangoBookingStore(BookingStore):
    def __init__(self, *, using: str = "default", lock_timeout: float | None = None):
        self.using = using
        self.lock_timeout = default_lock_timeout() if lock_timeout is None else float(lock_timeout)

    @contextmanager
    def atomic(self):
        connection = connections[self.using]
        outermost = not connection.in_atomic_block
        try:
            with transaction.atomic(using=self.using):
                if outermost:
                    self._apply_lock_timeout(connection)
                yield
        except (OperationalError, InterfaceError) as exc:
            # lock wait timeout, deadlock victim, lost connection: всё уже откатилось
            logger.warning("Booking transaction aborted by the database: %s", exc)
            raise Unavailable() from exc

    def _apply_lock_timeout(self, connection) -> None:
        # SQLite: busy timeout задаётся в OPTIONS соединения (см. settings)
        if connection.vendor == "mysql":
            seconds = max(1, math.ceil(self.lock_timeout))
            with connection.cursor() as cursor:
                cursor.execute("SET SESSION innodb_lock_wait_timeout = %s", [seconds])

    def _sessions(self):
        return Session.objects.using(self.using)

    def _bookings(self):
        return Booking.objects.using(self.using)

    def lock_session(self, session_id) -> Session:
        pk = as_int(session_id)
        session = None if pk is None else self._sessions().select_for_update().filter(pk=pk).first()
        if session is None:
            raise NotFound("Занятие не найдено")
        return session

    def lock_booking(self, booking_id) -> Booking:
        try:
            booking = self._bookings().select_for_update().filter(pk=booking_id).first()
        except (TypeError, ValueError, ValidationError):
            booking = None
        if booking is None:
            raise NotFound("Запись не найдена")
        return booking

    def has_active_booking(self, member_id, session_id) -> bool:
        return self._bookings().filter(
            member_id=member_id,
            session_id=session_id,
            status=BookingStatus.CONFIRMED,
        ).exists()

    def count_confirmed(self, session_id) -> int:
        return self._bookings().filter(session_id=session_id, status=BookingStatus.CONFIRMED).count()

    def save_session(self, session: Session) -> None:
        session.save(using=self.using, update_fields=["current_capacity", "max_capacity"])

    def add_booking(self, *, session: Session, member_id, notes: str, booking_time) -> Booking:
        try:
            with transaction.atomic(using=self.using):
                return self._bookings().create(
                    session=session,
                    member_id=member_id,
                    status=BookingStatus.CONFIRMED,
                    booking_time=booking_time,
                    notes=notes or "",
                )
        except IntegrityError as exc:
            # partial unique index uniq_active_member_session
            raise Conflict("Вы уже записаны на это занятие", reason=Conflict.DUPLICATE) from exc

    def save_booking(self, booking: Booking) -> None:
        booking.save(using=self.using, update_fields=["status", "cancelled_at"])

    def get_session(self, session_id) -> Session:
        pk = as_int(session_id)
        session = None if pk is None else self._sessions().select_related("trainer").filter(pk=pk).first()
        if session is None:
            raise NotFound("Занятие не найдено")
        return session

    def list_bookings(self, *, member_id=None) -> list[Booking]:
        qs = self._bookings().select_related("session", "session__trainer", "member")
        if member_id is not None:
            return list(qs.filter(member_id=member_id).order_by("-session__start_at", "-booking_time"))
        return list(qs.order_by("-booking_time"))
