"""Booking error taxonomy.

Every failure the capacity coordinator reports is a ``BookingError``
subclass. ``kind`` is the stable machine-readable name, ``status_code`` the
HTTP status the JSON views answer with, and ``retryable`` tells the caller
whether repeating the same request may succeed. Only ``Unavailable`` is
retryable: the failed transaction has been rolled back, so nothing partial is
left behind.
"""


class BookingError(Exception):
    kind = "error"
    status_code = 500
    retryable = False
    default_message = "Ошибка записи"

    def __init__(self, message: str = "", *, reason: str = ""):
        self.message = message or self.default_message
        self.reason = reason
        super().__init__(self.message)

    def as_dict(self) -> dict:
        data = {"error": self.kind, "message": self.message}
        if self.reason:
            data["reason"] = self.reason
        return data


class Unauthenticated(BookingError):
    kind = "unauthenticated"
    status_code = 401
    default_message = "Требуется вход в аккаунт"


class Forbidden(BookingError):
    kind = "forbidden"
    status_code = 403
    default_message = "Недостаточно прав"


class NotFound(BookingError):
    kind = "not_found"
    status_code = 404
    default_message = "Не найдено"


class InvalidInput(BookingError):
    kind = "invalid_input"
    status_code = 400
    default_message = "Некорректный запрос"


class InvalidState(BookingError):
    kind = "invalid_state"
    status_code = 400
    default_message = "Занятие уже началось"


class Conflict(BookingError):
    kind = "conflict"
    status_code = 409
    default_message = "Конфликт записи"

    FULL = "full"
    DUPLICATE = "duplicate"
    ALREADY_CANCELLED = "already-cancelled"
    BELOW_CURRENT = "below-current"
    OVER_CAPACITY = "over-capacity"


class Unavailable(BookingError):
    kind = "unavailable"
    status_code = 503
    retryable = True
    default_message = "Сервис записи временно недоступен, попробуйте ещё раз"
