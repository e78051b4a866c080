"""In-process ``BookingStore`` with the same locking contract as the database.

Each session and booking has its own ``threading.Lock``; ``lock_session`` /
``lock_booking`` acquire it with a timeout and keep it until the enclosing
``atomic()`` block ends. Writes are staged on the transaction and applied on
commit, so an exception anywhere inside the block leaves the store untouched.
"""
from __future__ import annotations

import itertools
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from .choices import BookingStatus
from .errors import NotFound, Unavailable
from .stores import BookingStore, as_int


@dataclass
class SessionRecord:
    id: int
    title: str
    start_at: datetime
    end_at: datetime
    max_capacity: int
    current_capacity: int = 0
    location: str = ""
    instructor_name: str = ""

    @property
    def seats_left(self) -> int:
        return max(0, self.max_capacity - self.current_capacity)


@dataclass
class BookingRecord:
    id: uuid.UUID
    member_id: int
    session_id: int
    status: BookingStatus
    booking_time: datetime
    notes: str = ""
    cancelled_at: datetime | None = None


@dataclass
class _Transaction:
    locks: list = field(default_factory=list)
    keys: set = field(default_factory=set)
    sessions: dict = field(default_factory=dict)
    bookings: dict = field(default_factory=dict)


class InMemoryBookingStore(BookingStore):
    def __init__(self, *, lock_timeout: float = 5.0):
        self.lock_timeout = lock_timeout
        self._sessions: dict[int, SessionRecord] = {}
        self._bookings: dict[uuid.UUID, BookingRecord] = {}
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, object], threading.Lock] = {}
        self._local = threading.local()
        self._ids = itertools.count(1)

    # --- setup (the session catalogue itself is managed elsewhere) ---

    def add_session(
        self,
        *,
        start_at: datetime,
        max_capacity: int,
        title: str = "Занятие",
        end_at: datetime | None = None,
        current_capacity: int = 0,
        location: str = "",
        instructor_name: str = "",
    ) -> SessionRecord:
        end_at = end_at or start_at + timedelta(minutes=60)
        if start_at >= end_at:
            raise ValueError("start_at must be before end_at")
        if max_capacity <= 0:
            raise ValueError("max_capacity must be positive")
        if not 0 <= current_capacity <= max_capacity:
            raise ValueError("current_capacity must be within 0..max_capacity")

        with self._guard:
            record = SessionRecord(
                id=next(self._ids),
                title=title,
                start_at=start_at,
                end_at=end_at,
                max_capacity=max_capacity,
                current_capacity=current_capacity,
                location=location,
                instructor_name=instructor_name,
            )
            self._sessions[record.id] = record
        return replace(record)

    # --- transactions and locks ---

    @contextmanager
    def atomic(self):
        if getattr(self._local, "tx", None) is not None:
            # joins the outer transaction
            yield
            return

        tx = _Transaction()
        self._local.tx = tx
        try:
            yield
            # on error staged writes are simply dropped
            self._commit(tx)
        finally:
            self._local.tx = None
            for lock in reversed(tx.locks):
                lock.release()

    def _commit(self, tx: _Transaction) -> None:
        with self._guard:
            for record in tx.sessions.values():
                self._sessions[record.id] = replace(record)
            for record in tx.bookings.values():
                self._bookings[record.id] = replace(record)

    def _tx(self) -> _Transaction:
        tx = getattr(self._local, "tx", None)
        if tx is None:
            raise RuntimeError("row locks and writes require an active atomic() block")
        return tx

    def _acquire(self, tx: _Transaction, key: tuple[str, object]) -> None:
        if key in tx.keys:
            return
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        if not lock.acquire(timeout=self.lock_timeout):
            raise Unavailable()
        tx.locks.append(lock)
        tx.keys.add(key)

    @staticmethod
    def _session_key(session_id) -> int:
        key = as_int(session_id)
        if key is None:
            raise NotFound("Занятие не найдено")
        return key

    @staticmethod
    def _booking_key(booking_id) -> uuid.UUID:
        try:
            return booking_id if isinstance(booking_id, uuid.UUID) else uuid.UUID(str(booking_id))
        except ValueError:
            raise NotFound("Запись не найдена") from None

    def _current_session(self, tx: _Transaction | None, session_id: int) -> SessionRecord | None:
        if tx is not None and session_id in tx.sessions:
            return tx.sessions[session_id]
        with self._guard:
            return self._sessions.get(session_id)

    def _current_bookings(self, tx: _Transaction | None) -> list[BookingRecord]:
        with self._guard:
            merged = dict(self._bookings)
        if tx is not None:
            merged.update(tx.bookings)
        return list(merged.values())

    def lock_session(self, session_id) -> SessionRecord:
        tx = self._tx()
        key = self._session_key(session_id)
        # records are never removed, so a lock is only created for an existing one
        if self._current_session(tx, key) is None:
            raise NotFound("Занятие не найдено")
        self._acquire(tx, ("session", key))
        return replace(self._current_session(tx, key))

    def lock_booking(self, booking_id) -> BookingRecord:
        tx = self._tx()
        key = self._booking_key(booking_id)
        if self._current_booking(tx, key) is None:
            raise NotFound("Запись не найдена")
        self._acquire(tx, ("booking", key))
        return replace(self._current_booking(tx, key))

    def _current_booking(self, tx: _Transaction, booking_id: uuid.UUID) -> BookingRecord | None:
        if booking_id in tx.bookings:
            return tx.bookings[booking_id]
        with self._guard:
            return self._bookings.get(booking_id)

    # --- reads/writes inside a transaction ---

    def has_active_booking(self, member_id, session_id) -> bool:
        tx = getattr(self._local, "tx", None)
        return any(
            b.member_id == member_id and b.session_id == session_id and b.status == BookingStatus.CONFIRMED
            for b in self._current_bookings(tx)
        )

    def count_confirmed(self, session_id) -> int:
        tx = getattr(self._local, "tx", None)
        return sum(
            1 for b in self._current_bookings(tx)
            if b.session_id == session_id and b.status == BookingStatus.CONFIRMED
        )

    def save_session(self, session: SessionRecord) -> None:
        tx = self._tx()
        if ("session", session.id) not in tx.keys:
            raise RuntimeError(f"session {session.id} is written without holding its lock")
        tx.sessions[session.id] = replace(session)

    def add_booking(self, *, session, member_id, notes: str, booking_time) -> BookingRecord:
        tx = self._tx()
        record = BookingRecord(
            id=uuid.uuid4(),
            member_id=member_id,
            session_id=session.id,
            status=BookingStatus.CONFIRMED,
            booking_time=booking_time,
            notes=notes or "",
        )
        tx.bookings[record.id] = record
        return replace(record)

    def save_booking(self, booking: BookingRecord) -> None:
        tx = self._tx()
        if ("booking", booking.id) not in tx.keys:
            raise RuntimeError(f"booking {booking.id} is written without holding its lock")
        tx.bookings[booking.id] = replace(booking)

    # --- readers (no locks) ---

    def get_session(self, session_id) -> SessionRecord:
        record = self._current_session(None, self._session_key(session_id))
        if record is None:
            raise NotFound("Занятие не найдено")
        return replace(record)

    def list_bookings(self, *, member_id=None) -> list[BookingRecord]:
        with self._guard:
            bookings = [replace(b) for b in self._bookings.values()]
            starts = {s.id: s.start_at for s in self._sessions.values()}
        if member_id is None:
            return sorted(bookings, key=lambda b: b.booking_time, reverse=True)
        own = [b for b in bookings if b.member_id == member_id]
        return sorted(own, key=lambda b: (starts[b.session_id], b.booking_time), reverse=True)
