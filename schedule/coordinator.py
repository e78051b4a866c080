"""Capacity coordinator: the only code path that books and cancels.

Every call runs in one transaction of the underlying ``BookingStore`` and
takes an exclusive lock on the session it touches, so all bookings and
cancellations of one session are serialised while different sessions
proceed in parallel. A failed check raises a ``BookingError`` from inside
the transaction, which rolls back whatever the call already wrote.
"""
from __future__ import annotations

import logging

from django.utils import timezone

from .choices import BookingStatus
from .errors import BookingError, Conflict, Forbidden, InvalidInput, InvalidState, Unauthenticated
from .stores import DjangoBookingStore, as_int


logger = logging.getLogger(__name__)


class CapacityCoordinator:
    def __init__(self, store=None, *, clock=None):
        self.store = store if store is not None else DjangoBookingStore()
        self.clock = clock or timezone.now

    @staticmethod
    def _require_principal(principal):
        if principal is None:
            raise Unauthenticated()
        return principal

    @staticmethod
    def _log_rejection(action: str, exc: BookingError, **context) -> None:
        details = " ".join(f"{k}={v}" for k, v in context.items())
        if exc.retryable:
            logger.warning("%s failed (%s): %s", action, exc.kind, details)
        else:
            logger.info("%s rejected (%s%s): %s", action, exc.kind, f"/{exc.reason}" if exc.reason else "", details)

    def request_booking(self, principal, session_id, notes: str = ""):
        """Reserve a seat for ``principal`` in ``session_id``.

        Checks, in order, under the session lock: the session exists, has not
        started, has a free seat, and the member holds no confirmed booking
        for it yet. Returns the new confirmed booking.
        """
        self._require_principal(principal)
        if not principal.is_member:
            raise Forbidden("Записываться на занятия могут только клиенты")

        try:
            with self.store.exclusive_session(session_id) as session:
                now = self.clock()
                if now >= session.start_at:
                    raise InvalidState("Нельзя записаться на занятие, которое уже началось")
                if session.current_capacity >= session.max_capacity:
                    raise Conflict("Свободных мест нет", reason=Conflict.FULL)
                if self.store.has_active_booking(principal.id, session.id):
                    raise Conflict("Вы уже записаны на это занятие", reason=Conflict.DUPLICATE)

                session.current_capacity += 1
                self.store.save_session(session)
                booking = self.store.add_booking(
                    session=session,
                    member_id=principal.id,
                    notes=(notes or "").strip(),
                    booking_time=now,
                )
        except BookingError as exc:
            self._log_rejection("Booking", exc, member=principal.id, session=session_id)
            raise

        logger.info(
            "Booking %s confirmed: member=%s session=%s seats=%s/%s",
            booking.id, principal.id, session.id, session.current_capacity, session.max_capacity,
        )
        return booking

    def cancel_booking(self, principal, booking_id):
        """Cancel a confirmed booking on behalf of its owner or an admin.

        The booking row is locked first, then its session; cancellation is a
        terminal status change, the record itself is kept.
        """
        self._require_principal(principal)

        try:
            with self.store.exclusive_booking(booking_id) as booking:
                if not principal.is_admin and booking.member_id != principal.id:
                    raise Forbidden("Нельзя отменить чужую запись")
                if booking.status == BookingStatus.CANCELLED:
                    raise Conflict("Запись уже отменена", reason=Conflict.ALREADY_CANCELLED)

                session = self.store.lock_session(booking.session_id)
                now = self.clock()
                if now >= session.start_at:
                    raise InvalidState("Нельзя отменить запись на занятие, которое уже началось")

                was_confirmed = booking.status == BookingStatus.CONFIRMED
                booking.status = BookingStatus.CANCELLED
                booking.cancelled_at = now
                self.store.save_booking(booking)

                if was_confirmed:
                    # floor at 0: the counter must never go negative
                    session.current_capacity = max(0, session.current_capacity - 1)
                    self.store.save_session(session)
        except BookingError as exc:
            self._log_rejection("Cancellation", exc, principal=principal.id, booking=booking_id)
            raise

        logger.info(
            "Booking %s cancelled by %s: session=%s seats=%s/%s",
            booking.id, principal.id, session.id, session.current_capacity, session.max_capacity,
        )
        return booking

    def change_capacity(self, principal, session_id, max_capacity):
        self._require_principal(principal)
        if not principal.is_admin:
            raise Forbidden("Менять вместимость может только администратор")

        value = as_int(max_capacity)
        if value is None or value <= 0:
            raise InvalidInput("Вместимость должна быть целым положительным числом")

        try:
            with self.store.exclusive_session(session_id) as session:
                if value < session.current_capacity:
                    raise Conflict(
                        f"Вместимость не может быть меньше числа записей ({session.current_capacity})",
                        reason=Conflict.BELOW_CURRENT,
                    )
                previous = session.max_capacity
                session.max_capacity = value
                self.store.save_session(session)
        except BookingError as exc:
            self._log_rejection("Capacity change", exc, principal=principal.id, session=session_id)
            raise

        logger.info("Session %s capacity changed %s -> %s by %s", session.id, previous, value, principal.id)
        return session

    def reconcile(self, session_id) -> dict:
        """Recount confirmed bookings and repair a drifted counter."""
        with self.store.exclusive_session(session_id) as session:
            before = session.current_capacity
            confirmed = self.store.count_confirmed(session.id)
            if confirmed > session.max_capacity:
                logger.error(
                    "Session %s has %s confirmed bookings over capacity %s",
                    session.id, confirmed, session.max_capacity,
                )
                raise Conflict("Записей больше, чем мест", reason=Conflict.OVER_CAPACITY)
            if confirmed != before:
                session.current_capacity = confirmed
                self.store.save_session(session)
                logger.warning("Session %s counter repaired: %s -> %s", session.id, before, confirmed)

        return {"session_id": session.id, "before": before, "after": confirmed, "changed": confirmed != before}

    def list_bookings(self, principal) -> list:
        self._require_principal(principal)
        if principal.is_member:
            return self.store.list_bookings(member_id=principal.id)
        if principal.is_admin:
            return self.store.list_bookings()
        raise Forbidden("Нет доступа к списку записей")
