"""Session lifecycle enums."""

from enum import Enum


class SessionType(str, Enum):
    """Which session table a record lives in (also the ledger source tag)."""

    TEXT = "text_session"
    CALL = "call_session"


class Modality(str, Enum):
    """Consultation channel. Drives unit price and which quota is debited."""

    TEXT = "text"
    VOICE = "voice"
    VIDEO = "video"


class SessionStatus(str, Enum):
    """Lifecycle status shared by text and call sessions."""

    WAITING_FOR_DOCTOR = "waiting_for_doctor"  # text: created, doctor has not replied
    PENDING = "pending"  # call: ringing
    ACTIVE = "active"  # text: doctor replied, clock running
    ANSWERED = "answered"  # call: answered, awaiting server promotion
    CONNECTED = "connected"  # call: promoted, clock running from connected_at
    ENDED = "ended"
    EXPIRED = "expired"
    DECLINED = "declined"
    FAILED = "failed"


class EndReason(str, Enum):
    """Why a session stopped."""

    MANUAL_END = "manual_end"
    TIME_EXPIRED = "time_expired"
    QUOTA_EXHAUSTED = "quota_exhausted"
    DOCTOR_NO_RESPONSE = "doctor_no_response"
    DECLINED = "declined_by_user"
    MISSED = "missed"
