from enum import Enum


class BookingStatus(str, Enum):
    PENDING_PROVIDER_REVIEW = "PENDING_PROVIDER_REVIEW"
    NEED_RESCHEDULING = "NEED_RESCHEDULING"
    PENDING_PROVIDER_APPROVAL = "PENDING_PROVIDER_APPROVAL"
    PENDING_USER_APPROVAL = "PENDING_USER_APPROVAL"
    ACCEPTED_BY_PROVIDER = "ACCEPTED_BY_PROVIDER"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    IN_PROGRESS = "IN_PROGRESS"
    JOB_DONE = "JOB_DONE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    AUTO_CANCELLED = "AUTO_CANCELLED"
    DISPUTED = "DISPUTED"


class BookingAction(str, Enum):
    ACCEPT = "accept"
    CONFIRM_PROPOSAL = "confirm_proposal"
    CANCEL = "cancel"
    REQUEST_PROVIDER_APPROVAL = "request_provider_approval"
    REQUEST_USER_APPROVAL = "request_user_approval"
    RESUBMIT = "resubmit"
    FLAG_RESCHEDULING = "flag_rescheduling"
    MARK_AWAITING_PAYMENT = "mark_awaiting_payment"
    MARK_PAYMENT_RECEIVED = "mark_payment_received"
    START_JOB = "start_job"
    MARK_JOB_DONE = "mark_job_done"
    MARK_COMPLETED = "mark_completed"
    DISPUTE = "dispute"
    ADJUST_TIME = "adjust_time"


class Actor(str, Enum):
    USER = "User"
    PROVIDER = "Provider"
    ADMIN = "Admin"
    SYSTEM = "System"


INITIAL_STATUS = BookingStatus.PENDING_PROVIDER_REVIEW

TERMINAL_STATUSES = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.AUTO_CANCELLED}
)
TERMINAL_STATUS_VALUES = frozenset(status.value for status in TERMINAL_STATUSES)

_S = BookingStatus
_A = BookingAction

BOOKING_TRANSITIONS: dict[tuple[BookingStatus, BookingAction], BookingStatus] = {
    (_S.PENDING_PROVIDER_REVIEW, _A.ACCEPT): _S.ACCEPTED_BY_PROVIDER,
    (_S.NEED_RESCHEDULING, _A.ACCEPT): _S.ACCEPTED_BY_PROVIDER,
    (_S.PENDING_PROVIDER_APPROVAL, _A.ACCEPT): _S.ACCEPTED_BY_PROVIDER,
    (_S.PENDING_USER_APPROVAL, _A.CONFIRM_PROPOSAL): _S.ACCEPTED_BY_PROVIDER,
    (_S.PENDING_PROVIDER_REVIEW, _A.CANCEL): _S.CANCELLED,
    (_S.ACCEPTED_BY_PROVIDER, _A.CANCEL): _S.CANCELLED,
    (_S.NEED_RESCHEDULING, _A.CANCEL): _S.CANCELLED,
    (_S.PENDING_PROVIDER_REVIEW, _A.REQUEST_PROVIDER_APPROVAL): _S.PENDING_PROVIDER_APPROVAL,
    (_S.NEED_RESCHEDULING, _A.REQUEST_PROVIDER_APPROVAL): _S.PENDING_PROVIDER_APPROVAL,
    (_S.PENDING_USER_APPROVAL, _A.REQUEST_PROVIDER_APPROVAL): _S.PENDING_PROVIDER_APPROVAL,
    (_S.PENDING_PROVIDER_APPROVAL, _A.REQUEST_PROVIDER_APPROVAL): _S.PENDING_PROVIDER_APPROVAL,
    (_S.PENDING_PROVIDER_REVIEW, _A.REQUEST_USER_APPROVAL): _S.PENDING_USER_APPROVAL,
    (_S.NEED_RESCHEDULING, _A.REQUEST_USER_APPROVAL): _S.PENDING_USER_APPROVAL,
    (_S.PENDING_PROVIDER_APPROVAL, _A.REQUEST_USER_APPROVAL): _S.PENDING_USER_APPROVAL,
    (_S.PENDING_USER_APPROVAL, _A.REQUEST_USER_APPROVAL): _S.PENDING_USER_APPROVAL,
    (_S.NEED_RESCHEDULING, _A.RESUBMIT): _S.PENDING_PROVIDER_REVIEW,
    (_S.PENDING_PROVIDER_REVIEW, _A.FLAG_RESCHEDULING): _S.NEED_RESCHEDULING,
    (_S.ACCEPTED_BY_PROVIDER, _A.MARK_AWAITING_PAYMENT): _S.AWAITING_PAYMENT,
    (_S.ACCEPTED_BY_PROVIDER, _A.MARK_PAYMENT_RECEIVED): _S.PAYMENT_RECEIVED,
    (_S.AWAITING_PAYMENT, _A.MARK_PAYMENT_RECEIVED): _S.PAYMENT_RECEIVED,
    (_S.PAYMENT_RECEIVED, _A.START_JOB): _S.IN_PROGRESS,
    (_S.PAYMENT_RECEIVED, _A.MARK_JOB_DONE): _S.JOB_DONE,
    (_S.IN_PROGRESS, _A.MARK_JOB_DONE): _S.JOB_DONE,
    (_S.JOB_DONE, _A.MARK_COMPLETED): _S.COMPLETED,
    (_S.PAYMENT_RECEIVED, _A.DISPUTE): _S.DISPUTED,
    (_S.IN_PROGRESS, _A.DISPUTE): _S.DISPUTED,
    (_S.JOB_DONE, _A.DISPUTE): _S.DISPUTED,
    (_S.ACCEPTED_BY_PROVIDER, _A.ADJUST_TIME): _S.ACCEPTED_BY_PROVIDER,
    (_S.AWAITING_PAYMENT, _A.ADJUST_TIME): _S.AWAITING_PAYMENT,
    (_S.PAYMENT_RECEIVED, _A.ADJUST_TIME): _S.PAYMENT_RECEIVED,
    (_S.IN_PROGRESS, _A.ADJUST_TIME): _S.IN_PROGRESS,
}


def coerce_status(value: str | BookingStatus) -> BookingStatus:
    return value if isinstance(value, BookingStatus) else BookingStatus(value)


def is_terminal(status: str | BookingStatus) -> bool:
    return coerce_status(status) in TERMINAL_STATUSES


def next_status(current: str | BookingStatus, action: BookingAction) -> BookingStatus | None:
    return BOOKING_TRANSITIONS.get((coerce_status(current), action))


def allowed_sources(action: BookingAction) -> list[BookingStatus]:
    return [source for (source, candidate), _ in BOOKING_TRANSITIONS.items() if candidate == action]


def describe_rejection(current: str | BookingStatus, action: BookingAction) -> str:
    status = coerce_status(current)
    if status in TERMINAL_STATUSES:
        return f"Booking is already in terminal status: {status.value}"
    return f"Cannot {action.value.replace('_', ' ')} a booking in status {status.value}"
