"""Typed payloads carried by notifications, one variant per category."""
from dataclasses import asdict, dataclass, field, fields
from typing import ClassVar, Dict, Optional, Union

from utils.errors import ValidationError


@dataclass(frozen=True)
class DocumentStatusPayload:
    category: ClassVar[str] = "documents"

    request_id: str
    status: str
    document_type: str
    document_number: Optional[str] = None
    transaction_code: Optional[str] = None
    remarks: Optional[str] = None


@dataclass(frozen=True)
class InquiryPayload:
    category: ClassVar[str] = "inquiries"

    inquiry_id: str
    status: Optional[str] = None
    subject: Optional[str] = None


@dataclass(frozen=True)
class SystemPayload:
    category: ClassVar[str] = "system"

    link: Optional[str] = None
    extra: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StaffApprovalPayload:
    category: ClassVar[str] = "staff_approval"

    staff_user_id: str
    username: str
    email: str


NotificationPayload = Union[DocumentStatusPayload, InquiryPayload, SystemPayload, StaffApprovalPayload]

PAYLOAD_TYPES = {
    cls.category: cls for cls in (DocumentStatusPayload, InquiryPayload, SystemPayload, StaffApprovalPayload)
}


def dump_payload(category: str, payload: Optional[NotificationPayload]) -> Optional[dict]:
    if payload is None:
        return None
    expected = PAYLOAD_TYPES.get(category)
    if expected is None or not isinstance(payload, expected):
        raise ValidationError(f"Payload {type(payload).__name__} does not match category {category}")
    return {"kind": category, **asdict(payload)}


def load_payload(category: str, data: Optional[dict]) -> Optional[NotificationPayload]:
    """Rebuild the typed payload; unknown keys from older rows are dropped."""
    if not data:
        return None
    cls = PAYLOAD_TYPES.get(category)
    if cls is None:
        return None
    known = {f.name for f in fields(cls)}
    try:
        return cls(**{k: v for k, v in data.items() if k in known})
    except TypeError:
        return None
