import json

from django.http import JsonResponse
from django.views.decorators.http import require_GET, require_http_methods

from accounts.principal import Principal

from .coordinator import CapacityCoordinator
from .errors import BookingError, InvalidInput, Unauthenticated
from .stores import as_int


def _coordinator() -> CapacityCoordinator:
    return CapacityCoordinator()


def _iso(dt):
    return dt.isoformat() if dt else None


def _error_response(exc: BookingError) -> JsonResponse:
    response = JsonResponse(exc.as_dict(), status=exc.status_code)
    if exc.retryable:
        response["Retry-After"] = "1"
    return response


def _read_json(request) -> dict:
    try:
        payload = json.loads(request.body or b"{}")
    except (ValueError, UnicodeDecodeError):
        raise InvalidInput("Некорректный JSON в теле запроса") from None
    if not isinstance(payload, dict):
        raise InvalidInput("Ожидается JSON-объект")
    return payload


def booking_payload(booking, *, include_member: bool = False) -> dict:
    s = booking.session
    data = {
        "id": str(booking.id),
        "member_id": booking.member_id,
        "session_id": booking.session_id,
        "booking_time": _iso(booking.booking_time),
        "status": str(booking.status),
        "notes": booking.notes or None,
        # денормализованные поля для отображения
        "class_name": s.title,
        "class_start_time": _iso(s.start_at),
        "instructor_name": s.instructor_name or None,
    }
    if include_member:
        data["member_name"] = str(booking.member)
    return data


def session_payload(s) -> dict:
    return {
        "id": s.id,
        "title": s.title,
        "location": s.location or None,
        "instructor_name": s.instructor_name or None,
        "start_at": _iso(s.start_at),
        "end_at": _iso(s.end_at),
        "max_capacity": s.max_capacity,
        "current_capacity": s.current_capacity,
        "seats_left": s.seats_left,
    }


@require_http_methods(["GET", "POST"])
def bookings(request):
    """GET: список записей (клиент видит свои, админ все). POST: записаться."""
    principal = Principal.from_user(request.user)
    if principal is None:
        return _error_response(Unauthenticated())

    coordinator = _coordinator()
    try:
        if request.method == "POST":
            payload = _read_json(request)
            session_id = payload.get("session_id")
            if session_id in (None, ""):
                raise InvalidInput("session_id обязателен")
            if as_int(session_id) is None:
                raise InvalidInput("session_id должен быть целым числом")
            notes = payload.get("notes") or ""
            if not isinstance(notes, str):
                raise InvalidInput("notes должно быть строкой")

            booking = coordinator.request_booking(principal, session_id, notes=notes)
            return JsonResponse(booking_payload(booking), status=201)

        items = coordinator.list_bookings(principal)
    except BookingError as exc:
        return _error_response(exc)

    return JsonResponse(
        [booking_payload(b, include_member=principal.is_admin) for b in items],
        safe=False,
    )


@require_http_methods(["DELETE"])
def booking_cancel(request, booking_id):
    principal = Principal.from_user(request.user)
    if principal is None:
        return _error_response(Unauthenticated())

    try:
        _coordinator().cancel_booking(principal, booking_id)
    except BookingError as exc:
        return _error_response(exc)

    return JsonResponse({"message": "ok"})


@require_GET
def session_detail(request, session_id: int):
    try:
        s = _coordinator().store.get_session(session_id)
    except BookingError as exc:
        return _error_response(exc)
    return JsonResponse(session_payload(s))


@require_http_methods(["PATCH"])
def session_capacity(request, session_id: int):
    principal = Principal.from_user(request.user)
    if principal is None:
        return _error_response(Unauthenticated())

    try:
        payload = _read_json(request)
        s = _coordinator().change_capacity(principal, session_id, payload.get("max_capacity"))
    except BookingError as exc:
        return _error_response(exc)

    return JsonResponse(session_payload(s))
