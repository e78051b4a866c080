import json
import threading
import uuid
from datetime import timedelta
from io import StringIO
from types import SimpleNamespace
from unittest import mock

from django.contrib.admin import site as admin_site
from django.contrib.auth import get_user_model
from django.contrib.messages import constants as message_levels
from django.contrib.messages.storage.cookie import CookieStorage
from django.core.management import call_command
from django.db import OperationalError, connection
from django.test import RequestFactory, SimpleTestCase, TestCase, TransactionTestCase
from django.urls import reverse
from django.utils import timezone

from accounts.models import User
from accounts.principal import Principal

from .choices import BookingStatus
from .coordinator import CapacityCoordinator
from .errors import Conflict, Forbidden, InvalidInput, InvalidState, NotFound, Unauthenticated, Unavailable
from .memory import InMemoryBookingStore
from .models import Booking, Session, Trainer
from .stores import DjangoBookingStore


def _make_session(*, start_in=timedelta(days=1), max_capacity=2, title="Пилатес", trainer=None) -> Session:
    start_at = timezone.now() + start_in
    return Session.objects.create(
        title=title,
        trainer=trainer,
        start_at=start_at,
        end_at=start_at + timedelta(minutes=50),
        max_capacity=max_capacity,
    )


def _member(username: str) -> User:
    return get_user_model().objects.create_user(username=username, password="pass12345", role=User.Role.MEMBER)


class InvariantsMixin:
    def assertInvariants(self, session: Session):
        session.refresh_from_db()
        confirmed = Booking.objects.filter(session=session, status=BookingStatus.CONFIRMED).count()
        self.assertEqual(session.current_capacity, confirmed)
        self.assertGreaterEqual(session.current_capacity, 0)
        self.assertLessEqual(session.current_capacity, session.max_capacity)


class RequestBookingTests(InvariantsMixin, TestCase):
    def setUp(self):
        self.m1 = _member("m1")
        self.m2 = _member("m2")
        self.coordinator = CapacityCoordinator()
        self.session = _make_session(max_capacity=2)

    def test_booking_confirms_and_takes_a_seat(self):
        booking = self.coordinator.request_booking(Principal.from_user(self.m1), self.session.pk, notes=" у окна ")

        self.assertEqual(booking.status, BookingStatus.CONFIRMED)
        self.assertEqual(booking.member_id, self.m1.pk)
        self.assertEqual(booking.notes, "у окна")
        self.assertIsNotNone(booking.booking_time)
        self.session.refresh_from_db()
        self.assertEqual(self.session.current_capacity, 1)
        self.assertInvariants(self.session)

    def test_full_session_is_rejected(self):
        self.session.max_capacity = 1
        self.session.save(update_fields=["max_capacity"])
        self.coordinator.request_booking(Principal.from_user(self.m1), self.session.pk)

        with self.assertRaises(Conflict) as ctx:
            self.coordinator.request_booking(Principal.from_user(self.m2), self.session.pk)

        self.assertEqual(ctx.exception.reason, Conflict.FULL)
        self.assertEqual(Booking.objects.filter(member=self.m2).count(), 0)
        self.assertInvariants(self.session)

    def test_second_booking_by_same_member_is_duplicate(self):
        principal = Principal.from_user(self.m1)
        self.coordinator.request_booking(principal, self.session.pk)

        with self.assertRaises(Conflict) as ctx:
            self.coordinator.request_booking(principal, self.session.pk)

        self.assertEqual(ctx.exception.reason, Conflict.DUPLICATE)
        self.session.refresh_from_db()
        self.assertEqual(self.session.current_capacity, 1)
        self.assertInvariants(self.session)

    def test_member_can_book_again_after_cancelling(self):
        principal = Principal.from_user(self.m1)
        first = self.coordinator.request_booking(principal, self.session.pk)
        self.coordinator.cancel_booking(principal, first.id)

        second = self.coordinator.request_booking(principal, self.session.pk)

        self.assertNotEqual(first.id, second.id)
        first.refresh_from_db()
        self.assertEqual(first.status, BookingStatus.CANCELLED)
        self.assertEqual(Booking.objects.filter(member=self.m1).count(), 2)
        self.assertInvariants(self.session)

    def test_started_session_is_rejected(self):
        started = _make_session(start_in=timedelta(minutes=-5))

        with self.assertRaises(InvalidState):
            self.coordinator.request_booking(Principal.from_user(self.m1), started.pk)

        self.assertFalse(Booking.objects.filter(session=started).exists())
        self.assertInvariants(started)

    def test_session_starting_exactly_now_is_rejected(self):
        coordinator = CapacityCoordinator(clock=lambda: self.session.start_at)
        with self.assertRaises(InvalidState):
            coordinator.request_booking(Principal.from_user(self.m1), self.session.pk)

    def test_unknown_session_is_not_found(self):
        principal = Principal.from_user(self.m1)
        with self.assertRaises(NotFound):
            self.coordinator.request_booking(principal, 999999)
        with self.assertRaises(NotFound):
            self.coordinator.request_booking(principal, "not-a-number")
        with self.assertRaises(NotFound):
            self.coordinator.request_booking(principal, self.session.pk + 0.9)
        self.assertFalse(Booking.objects.exists())

    def test_only_members_can_book(self):
        instructor = get_user_model().objects.create_user(
            username="coach", password="pass12345", role=User.Role.INSTRUCTOR
        )
        admin_user = get_user_model().objects.create_user(
            username="boss", password="pass12345", role=User.Role.ADMIN
        )

        for user in (instructor, admin_user):
            with self.assertRaises(Forbidden):
                self.coordinator.request_booking(Principal.from_user(user), self.session.pk)

        self.assertFalse(Booking.objects.exists())

    def test_missing_principal_is_unauthenticated(self):
        with self.assertRaises(Unauthenticated):
            self.coordinator.request_booking(None, self.session.pk)

    def test_store_failure_rolls_back_the_seat(self):
        with mock.patch.object(
            DjangoBookingStore, "add_booking", side_effect=OperationalError("Lock wait timeout exceeded")
        ):
            with self.assertRaises(Unavailable) as ctx:
                self.coordinator.request_booking(Principal.from_user(self.m1), self.session.pk)

        self.assertTrue(ctx.exception.retryable)
        self.session.refresh_from_db()
        self.assertEqual(self.session.current_capacity, 0)
        self.assertFalse(Booking.objects.exists())

    def test_accepted_booking_is_logged(self):
        with self.assertLogs("schedule.coordinator", level="INFO") as logs:
            self.coordinator.request_booking(Principal.from_user(self.m1), self.session.pk)
        self.assertTrue(any("confirmed" in line for line in logs.output))


class CancelBookingTests(InvariantsMixin, TestCase):
    def setUp(self):
        self.m1 = _member("m1")
        self.m2 = _member("m2")
        self.admin_user = get_user_model().objects.create_user(
            username="admin", password="pass12345", is_staff=True
        )
        self.coordinator = CapacityCoordinator()
        self.session = _make_session(max_capacity=3)
        self.booking = self.coordinator.request_booking(Principal.from_user(self.m1), self.session.pk)

    def test_round_trip_restores_capacity(self):
        self.coordinator.cancel_booking(Principal.from_user(self.m1), self.booking.id)

        self.session.refresh_from_db()
        self.assertEqual(self.session.current_capacity, 0)
        bookings = list(Booking.objects.filter(session=self.session))
        self.assertEqual(len(bookings), 1)
        self.assertEqual(bookings[0].status, BookingStatus.CANCELLED)
        self.assertIsNotNone(bookings[0].cancelled_at)
        self.assertInvariants(self.session)

    def test_second_cancellation_is_conflict(self):
        principal = Principal.from_user(self.m1)
        self.coordinator.cancel_booking(principal, self.booking.id)

        with self.assertRaises(Conflict) as ctx:
            self.coordinator.cancel_booking(principal, self.booking.id)

        self.assertEqual(ctx.exception.reason, Conflict.ALREADY_CANCELLED)
        self.session.refresh_from_db()
        self.assertEqual(self.session.current_capacity, 0)

    def test_other_member_cannot_cancel(self):
        with self.assertRaises(Forbidden):
            self.coordinator.cancel_booking(Principal.from_user(self.m2), self.booking.id)

        self.booking.refresh_from_db()
        self.assertEqual(self.booking.status, BookingStatus.CONFIRMED)

    def test_admin_can_cancel_any_booking(self):
        self.coordinator.cancel_booking(Principal.from_user(self.admin_user), self.booking.id)

        self.booking.refresh_from_db()
        self.assertEqual(self.booking.status, BookingStatus.CANCELLED)
        self.assertInvariants(self.session)

    def test_cancel_after_start_is_rejected(self):
        late = CapacityCoordinator(clock=lambda: self.session.start_at + timedelta(minutes=1))

        with self.assertRaises(InvalidState):
            late.cancel_booking(Principal.from_user(self.m1), self.booking.id)

        self.booking.refresh_from_db()
        self.assertEqual(self.booking.status, BookingStatus.CONFIRMED)
        self.assertInvariants(self.session)

    def test_unknown_booking_is_not_found(self):
        principal = Principal.from_user(self.m1)
        with self.assertRaises(NotFound):
            self.coordinator.cancel_booking(principal, uuid.uuid4())
        with self.assertRaises(NotFound):
            self.coordinator.cancel_booking(principal, "garbage")

    def test_counter_never_goes_negative(self):
        # счётчик уже разъехался с данными: отмена не уводит его ниже нуля
        Session.objects.filter(pk=self.session.pk).update(current_capacity=0)

        self.coordinator.cancel_booking(Principal.from_user(self.m1), self.booking.id)

        self.session.refresh_from_db()
        self.assertEqual(self.session.current_capacity, 0)


class BookingScenarioTests(InvariantsMixin, TestCase):
    def test_full_class_frees_a_seat_after_cancellation(self):
        m0, m1, m2 = _member("m0"), _member("m1"), _member("m2")
        coordinator = CapacityCoordinator()
        s1 = _make_session(max_capacity=2)
        coordinator.request_booking(Principal.from_user(m0), s1.pk)

        b1 = coordinator.request_booking(Principal.from_user(m1), s1.pk)
        s1.refresh_from_db()
        self.assertEqual(s1.current_capacity, 2)

        with self.assertRaises(Conflict) as ctx:
            coordinator.request_booking(Principal.from_user(m2), s1.pk)
        self.assertEqual(ctx.exception.reason, Conflict.FULL)

        coordinator.cancel_booking(Principal.from_user(m1), b1.id)
        s1.refresh_from_db()
        self.assertEqual(s1.current_capacity, 1)

        coordinator.request_booking(Principal.from_user(m2), s1.pk)
        s1.refresh_from_db()
        self.assertEqual(s1.current_capacity, 2)
        self.assertInvariants(s1)


class CapacityManagementTests(InvariantsMixin, TestCase):
    def setUp(self):
        self.member = _member("m1")
        self.admin_user = get_user_model().objects.create_user(
            username="boss", password="pass12345", role=User.Role.ADMIN
        )
        self.coordinator = CapacityCoordinator()
        self.session = _make_session(max_capacity=2)
        self.coordinator.request_booking(Principal.from_user(self.member), self.session.pk)

    def test_admin_raises_capacity(self):
        updated = self.coordinator.change_capacity(Principal.from_user(self.admin_user), self.session.pk, 10)

        self.assertEqual(updated.max_capacity, 10)
        self.session.refresh_from_db()
        self.assertEqual(self.session.max_capacity, 10)
        self.assertEqual(self.session.current_capacity, 1)

    def test_capacity_cannot_drop_below_bookings(self):
        self.coordinator.request_booking(Principal.from_user(_member("m2")), self.session.pk)

        with self.assertRaises(Conflict) as ctx:
            self.coordinator.change_capacity(Principal.from_user(self.admin_user), self.session.pk, 1)

        self.assertEqual(ctx.exception.reason, Conflict.BELOW_CURRENT)
        self.session.refresh_from_db()
        self.assertEqual(self.session.max_capacity, 2)
        self.assertInvariants(self.session)

    def test_capacity_must_be_a_positive_number(self):
        admin = Principal.from_user(self.admin_user)
        for value in (0, -3, "many", None, True, 5.7, "5.7"):
            with self.assertRaises(InvalidInput):
                self.coordinator.change_capacity(admin, self.session.pk, value)

    def test_member_cannot_change_capacity(self):
        with self.assertRaises(Forbidden):
            self.coordinator.change_capacity(Principal.from_user(self.member), self.session.pk, 5)

    def test_reconcile_repairs_a_drifted_counter(self):
        Session.objects.filter(pk=self.session.pk).update(current_capacity=0)

        result = self.coordinator.reconcile(self.session.pk)

        self.assertTrue(result["changed"])
        self.assertEqual(result["before"], 0)
        self.assertEqual(result["after"], 1)
        self.assertInvariants(self.session)

    def test_reconcile_leaves_a_correct_counter_alone(self):
        result = self.coordinator.reconcile(self.session.pk)
        self.assertFalse(result["changed"])

    def test_audit_command_reports_and_fixes(self):
        Session.objects.filter(pk=self.session.pk).update(current_capacity=2)

        out = StringIO()
        call_command("audit_capacity", stdout=out)
        self.assertIn(f"Session #{self.session.pk}", out.getvalue())
        self.session.refresh_from_db()
        self.assertEqual(self.session.current_capacity, 2)

        out = StringIO()
        call_command("audit_capacity", "--fix", stdout=out)
        self.assertIn("fixed: 2 -> 1", out.getvalue())
        self.assertInvariants(self.session)


class DjangoStoreTests(TestCase):
    def setUp(self):
        self.member = _member("m1")
        self.store = DjangoBookingStore()
        self.session = _make_session()

    def test_active_booking_is_unique_per_member_and_session(self):
        CapacityCoordinator(self.store).request_booking(Principal.from_user(self.member), self.session.pk)

        with self.assertRaises(Conflict) as ctx:
            with self.store.atomic():
                self.store.add_booking(
                    session=self.session, member_id=self.member.pk, notes="", booking_time=timezone.now()
                )
        self.assertEqual(ctx.exception.reason, Conflict.DUPLICATE)

    def test_member_sees_own_bookings_newest_session_first(self):
        other = _member("m2")
        later = _make_session(start_in=timedelta(days=3))
        coordinator = CapacityCoordinator(self.store)
        coordinator.request_booking(Principal.from_user(self.member), self.session.pk)
        coordinator.request_booking(Principal.from_user(self.member), later.pk)
        coordinator.request_booking(Principal.from_user(other), later.pk)

        own = self.store.list_bookings(member_id=self.member.pk)

        self.assertEqual([b.session_id for b in own], [later.pk, self.session.pk])
        self.assertEqual(len(self.store.list_bookings()), 3)


class InMemoryCoordinatorTests(SimpleTestCase):
    def setUp(self):
        self.store = InMemoryBookingStore()
        self.coordinator = CapacityCoordinator(self.store)
        self.session = self.store.add_session(start_at=timezone.now() + timedelta(hours=2), max_capacity=2)
        self.m1 = Principal(id=1, role=User.Role.MEMBER)
        self.m2 = Principal(id=2, role=User.Role.MEMBER)

    def _confirmed(self, session_id):
        return [b for b in self.store.list_bookings() if b.session_id == session_id and b.status == BookingStatus.CONFIRMED]

    def test_book_and_cancel_round_trip(self):
        booking = self.coordinator.request_booking(self.m1, self.session.id)
        self.assertEqual(self.store.get_session(self.session.id).current_capacity, 1)

        self.coordinator.cancel_booking(self.m1, booking.id)

        self.assertEqual(self.store.get_session(self.session.id).current_capacity, 0)
        (stored,) = self.store.list_bookings()
        self.assertEqual(stored.id, booking.id)
        self.assertEqual(stored.status, BookingStatus.CANCELLED)

    def test_failure_inside_transaction_leaves_store_untouched(self):
        class BrokenStore(InMemoryBookingStore):
            def add_booking(self, **kwargs):
                raise Unavailable()

        store = BrokenStore()
        session = store.add_session(start_at=timezone.now() + timedelta(hours=1), max_capacity=1)

        with self.assertRaises(Unavailable):
            CapacityCoordinator(store).request_booking(self.m1, session.id)

        self.assertEqual(store.get_session(session.id).current_capacity, 0)
        self.assertEqual(store.list_bookings(), [])

    def test_writes_require_the_row_lock(self):
        with self.assertRaises(RuntimeError):
            self.store.lock_session(self.session.id)

        with self.store.atomic():
            with self.assertRaises(RuntimeError):
                self.store.save_session(self.session)

    def test_reader_copies_are_detached(self):
        copy = self.store.get_session(self.session.id)
        copy.current_capacity = 99
        self.assertEqual(self.store.get_session(self.session.id).current_capacity, 0)

    def test_instructor_cannot_list_bookings(self):
        with self.assertRaises(Forbidden):
            self.coordinator.list_bookings(Principal(id=3, role=User.Role.INSTRUCTOR))

    def test_unknown_ids_leave_no_lock_behind(self):
        for session_id in (9999, self.session.id + 0.5, "x"):
            with self.assertRaises(NotFound):
                self.coordinator.request_booking(self.m1, session_id)
        with self.assertRaises(NotFound):
            self.coordinator.cancel_booking(self.m1, uuid.uuid4())

        self.assertEqual(self.store._locks, {})
        self.assertEqual(self.store.get_session(self.session.id).current_capacity, 0)


class InMemoryContentionTests(SimpleTestCase):
    def _race(self, calls):
        barrier = threading.Barrier(len(calls))
        results = [None] * len(calls)

        def run(i, fn):
            barrier.wait()
            try:
                results[i] = fn()
            except Exception as exc:  # noqa: BLE001
                results[i] = exc

        threads = [threading.Thread(target=run, args=(i, fn)) for i, fn in enumerate(calls)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        return results

    def test_last_seat_goes_to_exactly_one_member(self):
        store = InMemoryBookingStore()
        coordinator = CapacityCoordinator(store)
        session = store.add_session(start_at=timezone.now() + timedelta(hours=2), max_capacity=1)

        results = self._race([
            (lambda member_id=member_id: coordinator.request_booking(
                Principal(id=member_id, role=User.Role.MEMBER), session.id
            ))
            for member_id in range(1, 21)
        ])

        booked = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, Conflict)]
        self.assertEqual(len(booked), 1)
        self.assertEqual(len(rejected), 19)
        self.assertTrue(all(r.reason == Conflict.FULL for r in rejected))
        self.assertEqual(store.get_session(session.id).current_capacity, 1)

    def test_same_member_racing_gets_one_booking(self):
        store = InMemoryBookingStore()
        coordinator = CapacityCoordinator(store)
        session = store.add_session(start_at=timezone.now() + timedelta(hours=2), max_capacity=5)
        member = Principal(id=7, role=User.Role.MEMBER)

        results = self._race([lambda: coordinator.request_booking(member, session.id)] * 4)

        self.assertEqual(len([r for r in results if not isinstance(r, Exception)]), 1)
        self.assertTrue(all(r.reason == Conflict.DUPLICATE for r in results if isinstance(r, Exception)))
        self.assertEqual(store.get_session(session.id).current_capacity, 1)

    def test_concurrent_cancellations_decrement_once(self):
        store = InMemoryBookingStore()
        coordinator = CapacityCoordinator(store)
        session = store.add_session(start_at=timezone.now() + timedelta(hours=2), max_capacity=3)
        member = Principal(id=1, role=User.Role.MEMBER)
        booking = coordinator.request_booking(member, session.id)

        results = self._race([lambda: coordinator.cancel_booking(member, booking.id)] * 5)

        conflicts = [r for r in results if isinstance(r, Conflict)]
        self.assertEqual(len(conflicts), 4)
        self.assertTrue(all(r.reason == Conflict.ALREADY_CANCELLED for r in conflicts))
        self.assertEqual(store.get_session(session.id).current_capacity, 0)

    def test_lock_wait_timeout_is_retryable_and_changes_nothing(self):
        store = InMemoryBookingStore(lock_timeout=0.1)
        coordinator = CapacityCoordinator(store)
        session = store.add_session(start_at=timezone.now() + timedelta(hours=2), max_capacity=3)
        holding, release = threading.Event(), threading.Event()

        def hold():
            with store.exclusive_session(session.id):
                holding.set()
                release.wait(timeout=5)

        holder = threading.Thread(target=hold)
        holder.start()
        try:
            self.assertTrue(holding.wait(timeout=5))
            with self.assertRaises(Unavailable) as ctx:
                coordinator.request_booking(Principal(id=1, role=User.Role.MEMBER), session.id)
            self.assertTrue(ctx.exception.retryable)
        finally:
            release.set()
            holder.join(timeout=5)

        self.assertEqual(store.get_session(session.id).current_capacity, 0)
        self.assertEqual(store.list_bookings(), [])

    def test_other_sessions_are_not_blocked(self):
        store = InMemoryBookingStore(lock_timeout=0.1)
        coordinator = CapacityCoordinator(store)
        start = timezone.now() + timedelta(hours=2)
        busy = store.add_session(start_at=start, max_capacity=3)
        free = store.add_session(start_at=start, max_capacity=3)
        holding, release = threading.Event(), threading.Event()

        def hold():
            with store.exclusive_session(busy.id):
                holding.set()
                release.wait(timeout=5)

        holder = threading.Thread(target=hold)
        holder.start()
        try:
            self.assertTrue(holding.wait(timeout=5))
            coordinator.request_booking(Principal(id=1, role=User.Role.MEMBER), free.id)
        finally:
            release.set()
            holder.join(timeout=5)

        self.assertEqual(store.get_session(free.id).current_capacity, 1)


class DjangoStoreContentionTests(TransactionTestCase):
    def test_last_seat_goes_to_exactly_one_member(self):
        members = [_member(f"racer{i}") for i in range(6)]
        session = _make_session(max_capacity=1)
        barrier = threading.Barrier(len(members))
        results = []
        results_lock = threading.Lock()

        def run(user):
            try:
                barrier.wait()
                try:
                    outcome = CapacityCoordinator().request_booking(Principal.from_user(user), session.pk)
                except (Conflict, Unavailable) as exc:
                    outcome = exc
                with results_lock:
                    results.append(outcome)
            finally:
                connection.close()

        threads = [threading.Thread(target=run, args=(u,)) for u in members]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        self.assertEqual(len(results), len(members))
        booked = [r for r in results if isinstance(r, Booking)]
        full = [r for r in results if isinstance(r, Conflict) and r.reason == Conflict.FULL]
        self.assertEqual(len(booked), 1)
        self.assertEqual(len(full), len(members) - 1)

        session.refresh_from_db()
        self.assertEqual(session.current_capacity, 1)
        self.assertEqual(Booking.objects.filter(session=session, status=BookingStatus.CONFIRMED).count(), 1)


class BookingApiTests(TestCase):
    def setUp(self):
        self.m1 = _member("m1")
        self.m2 = _member("m2")
        self.admin_user = get_user_model().objects.create_user(
            username="boss", password="pass12345", role=User.Role.ADMIN
        )
        self.trainer = Trainer.objects.create(name="Совина Елена")
        self.session = _make_session(max_capacity=1, title="Плоский живот", trainer=self.trainer)
        self.url = reverse("schedule:bookings")

    def _post(self, payload):
        return self.client.post(self.url, data=json.dumps(payload), content_type="application/json")

    def _book(self, user):
        self.client.force_login(user)
        response = self._post({"session_id": self.session.pk, "notes": "первый раз"})
        self.assertEqual(response.status_code, 201)
        return response.json()

    def test_create_returns_enriched_booking(self):
        data = self._book(self.m1)

        self.assertEqual(data["status"], "confirmed")
        self.assertEqual(data["member_id"], self.m1.pk)
        self.assertEqual(data["session_id"], self.session.pk)
        self.assertEqual(data["notes"], "первый раз")
        self.assertEqual(data["class_name"], "Плоский живот")
        self.assertEqual(data["instructor_name"], "Совина Елена")
        self.assertTrue(Booking.objects.filter(pk=data["id"]).exists())

    def test_create_requires_authentication(self):
        response = self._post({"session_id": self.session.pk})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"], "unauthenticated")

    def test_create_validates_body(self):
        self.client.force_login(self.m1)

        self.assertEqual(self._post({}).status_code, 400)
        response = self.client.post(self.url, data="{not json", content_type="application/json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "invalid_input")
        self.assertEqual(self._post({"session_id": self.session.pk, "notes": 5}).status_code, 400)

    def test_create_for_unknown_session_is_404(self):
        self.client.force_login(self.m1)
        self.assertEqual(self._post({"session_id": 424242}).status_code, 404)

    def test_create_rejects_fractional_session_id(self):
        self.client.force_login(self.m1)

        for value in (self.session.pk + 0.9, f"{self.session.pk}.9", True):
            response = self._post({"session_id": value})
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json()["error"], "invalid_input")

        self.assertFalse(Booking.objects.exists())
        self.assertEqual(self._post({"session_id": str(self.session.pk)}).status_code, 201)

    def test_full_session_is_409(self):
        self._book(self.m1)
        self.client.force_login(self.m2)

        response = self._post({"session_id": self.session.pk})

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["reason"], "full")

    def test_admin_cannot_create_bookings(self):
        self.client.force_login(self.admin_user)
        self.assertEqual(self._post({"session_id": self.session.pk}).status_code, 403)

    def test_cancel_then_cancel_again(self):
        data = self._book(self.m1)
        url = reverse("schedule:booking_cancel", args=[data["id"]])

        response = self.client.delete(url)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"message": "ok"})

        response = self.client.delete(url)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["reason"], "already-cancelled")

        self.session.refresh_from_db()
        self.assertEqual(self.session.current_capacity, 0)

    def test_cancel_someone_elses_booking_is_403(self):
        data = self._book(self.m1)
        self.client.force_login(self.m2)

        response = self.client.delete(reverse("schedule:booking_cancel", args=[data["id"]]))

        self.assertEqual(response.status_code, 403)

    def test_cancel_unknown_booking_is_404(self):
        self.client.force_login(self.m1)
        response = self.client.delete(reverse("schedule:booking_cancel", args=[uuid.uuid4()]))
        self.assertEqual(response.status_code, 404)

    def test_list_is_scoped_by_role(self):
        self._book(self.m1)

        self.client.force_login(self.m2)
        self.assertEqual(self.client.get(self.url).json(), [])

        self.client.force_login(self.m1)
        own = self.client.get(self.url).json()
        self.assertEqual(len(own), 1)
        self.assertNotIn("member_name", own[0])

        self.client.force_login(self.admin_user)
        everything = self.client.get(self.url).json()
        self.assertEqual(len(everything), 1)
        self.assertEqual(everything[0]["member_name"], str(self.m1))

        instructor = get_user_model().objects.create_user(
            username="coach", password="pass12345", role=User.Role.INSTRUCTOR
        )
        self.client.force_login(instructor)
        self.assertEqual(self.client.get(self.url).status_code, 403)

    def test_session_detail_shows_seats_left(self):
        self._book(self.m1)

        data = self.client.get(reverse("schedule:session_detail", args=[self.session.pk])).json()

        self.assertEqual(data["current_capacity"], 1)
        self.assertEqual(data["seats_left"], 0)
        self.assertEqual(self.client.get(reverse("schedule:session_detail", args=[999999])).status_code, 404)

    def test_capacity_patch(self):
        self._book(self.m1)
        url = reverse("schedule:session_capacity", args=[self.session.pk])

        self.client.force_login(self.m1)
        response = self.client.patch(url, data=json.dumps({"max_capacity": 5}), content_type="application/json")
        self.assertEqual(response.status_code, 403)

        self.client.force_login(self.admin_user)
        response = self.client.patch(url, data=json.dumps({"max_capacity": 5}), content_type="application/json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["max_capacity"], 5)

        response = self.client.patch(url, data=json.dumps({"max_capacity": 0}), content_type="application/json")
        self.assertEqual(response.status_code, 400)

    def test_store_outage_is_503_with_retry_after(self):
        self.client.force_login(self.m1)
        with mock.patch.object(
            DjangoBookingStore, "lock_session", side_effect=OperationalError("database is locked")
        ):
            response = self._post({"session_id": self.session.pk})

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["error"], "unavailable")
        self.assertEqual(response["Retry-After"], "1")


def _admin_request(user, path="/admin/"):
    request = RequestFactory().post(path)
    request.user = user
    request._messages = CookieStorage(request)
    return request


class BookingAdminTests(InvariantsMixin, TestCase):
    def setUp(self):
        self.superuser = get_user_model().objects.create_superuser(
            username="root", password="pass12345", email="root@example.com"
        )
        self.member = _member("m1")
        self.session = _make_session(max_capacity=2)
        self.booking = CapacityCoordinator().request_booking(Principal.from_user(self.member), self.session.pk)
        self.model_admin = admin_site._registry[Booking]

    def test_cancel_action_goes_through_the_coordinator(self):
        self.client.force_login(self.superuser)

        response = self.client.post(
            reverse("admin:schedule_booking_changelist"),
            {"action": "cancel_bookings", "_selected_action": [str(self.booking.pk)]},
        )

        self.assertEqual(response.status_code, 302)
        self.booking.refresh_from_db()
        self.assertEqual(self.booking.status, BookingStatus.CANCELLED)
        self.session.refresh_from_db()
        self.assertEqual(self.session.current_capacity, 0)

    def test_notes_edit_does_not_revive_a_cancelled_booking(self):
        stale = Booking.objects.get(pk=self.booking.pk)
        CapacityCoordinator().cancel_booking(Principal.from_user(self.member), self.booking.pk)

        stale.notes = "без коврика"
        self.model_admin.save_model(_admin_request(self.superuser), stale, None, True)

        self.booking.refresh_from_db()
        self.assertEqual(self.booking.status, BookingStatus.CANCELLED)
        self.assertIsNotNone(self.booking.cancelled_at)
        self.assertEqual(self.booking.notes, "без коврика")
        self.assertInvariants(self.session)

    def test_change_form_saves_notes_only(self):
        self.client.force_login(self.superuser)

        response = self.client.post(
            reverse("admin:schedule_booking_change", args=[self.booking.pk]),
            {"notes": "у окна", "_save": "1"},
        )

        self.assertEqual(response.status_code, 302)
        self.booking.refresh_from_db()
        self.assertEqual(self.booking.notes, "у окна")
        self.assertEqual(self.booking.status, BookingStatus.CONFIRMED)
        self.assertInvariants(self.session)


class SessionAdminTests(InvariantsMixin, TestCase):
    def setUp(self):
        self.superuser = get_user_model().objects.create_superuser(
            username="root", password="pass12345", email="root@example.com"
        )
        self.session = _make_session(max_capacity=3)
        coordinator = CapacityCoordinator()
        self.m1, self.m2 = _member("m1"), _member("m2")
        self.b1 = coordinator.request_booking(Principal.from_user(self.m1), self.session.pk)
        coordinator.request_booking(Principal.from_user(self.m2), self.session.pk)
        self.model_admin = admin_site._registry[Session]
        self.path = reverse("admin:schedule_session_change", args=[self.session.pk])

    def test_capacity_change_goes_through_the_coordinator(self):
        obj = Session.objects.get(pk=self.session.pk)
        obj.max_capacity = 5

        with self.assertLogs("schedule.coordinator", level="INFO") as logs:
            self.model_admin.save_model(
                _admin_request(self.superuser, self.path), obj, SimpleNamespace(changed_data=["max_capacity"]), True
            )

        self.assertTrue(any("capacity changed 3 -> 5" in line for line in logs.output))
        self.session.refresh_from_db()
        self.assertEqual(self.session.max_capacity, 5)
        self.assertEqual(self.session.current_capacity, 2)

    def test_capacity_below_bookings_is_rejected_without_success_message(self):
        request = _admin_request(self.superuser, self.path)
        obj = Session.objects.get(pk=self.session.pk)
        obj.max_capacity = 1

        self.model_admin.save_model(request, obj, SimpleNamespace(changed_data=["max_capacity"]), True)
        response = self.model_admin.response_change(request, obj)

        self.assertEqual(response.status_code, 302)
        self.assertEqual(response["Location"], self.path)
        levels = [m.level for m in request._messages]
        self.assertEqual(levels, [message_levels.ERROR])
        self.session.refresh_from_db()
        self.assertEqual(self.session.max_capacity, 3)
        self.assertInvariants(self.session)

    def test_stale_counter_from_the_form_is_not_written_back(self):
        stale = Session.objects.get(pk=self.session.pk)
        CapacityCoordinator().cancel_booking(Principal.from_user(self.m1), self.b1.pk)

        stale.title = "Пилатес для начинающих"
        self.model_admin.save_model(
            _admin_request(self.superuser, self.path), stale, SimpleNamespace(changed_data=["title"]), True
        )

        self.session.refresh_from_db()
        self.assertEqual(self.session.title, "Пилатес для начинающих")
        self.assertEqual(self.session.current_capacity, 1)
        self.assertInvariants(self.session)
