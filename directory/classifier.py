from __future__ import annotations

from typing import Any, Iterable, Optional

from adapters.base import Record

from .models import DirectoryObjectRef, ObjectKind

SECURITY_GROUP_TYPE_DETAILS = "MailUniversalSecurityGroup"
SECURITY_ENABLED_FLAG = "SecurityEnabled"

# Kinds whose remote RecipientTypeDetails maps to exactly one kind.
FIXED_TYPE_DETAILS = {
    "SharedMailbox": ObjectKind.SHARED_MAILBOX,
    "RoomMailbox": ObjectKind.ROOM_MAILBOX,
    "EquipmentMailbox": ObjectKind.EQUIPMENT_MAILBOX,
    "DynamicDistributionGroup": ObjectKind.DYNAMIC_DISTRIBUTION_GROUP,
}


def _group_type_flags(value: Any) -> Iterable[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.replace(";", ",").split(",") if part.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(part).strip() for part in value]
    return [str(value)]


def classify_group(record: Record) -> ObjectKind:
    if str(record.get("RecipientTypeDetails") or "") == SECURITY_GROUP_TYPE_DETAILS:
        return ObjectKind.MAIL_SECURITY_GROUP
    flags = {flag.lower() for flag in _group_type_flags(record.get("GroupType"))}
    if SECURITY_ENABLED_FLAG.lower() in flags:
        return ObjectKind.MAIL_SECURITY_GROUP
    return ObjectKind.DISTRIBUTION_GROUP


def classify_record(record: Record, kind: Optional[ObjectKind] = None) -> ObjectKind:
    if kind is not None and not kind.is_static_group:
        return kind
    if kind is None:
        fixed = FIXED_TYPE_DETAILS.get(str(record.get("RecipientTypeDetails") or ""))
        if fixed is not None:
            return fixed
    return classify_group(record)


def decode_record(record: Record, kind: Optional[ObjectKind] = None) -> DirectoryObjectRef:
    """Turn a raw search record into an immutable reference, fixing its kind."""
    resolved_kind = classify_record(record, kind)
    primary_email = str(record.get("PrimarySmtpAddress") or "")
    remote_identity = str(
        record.get("Guid")
        or record.get("ExternalDirectoryObjectId")
        or record.get("Identity")
        or primary_email
        or record.get("Name")
        or ""
    )
    return DirectoryObjectRef(
        kind=resolved_kind,
        display_name=str(record.get("DisplayName") or record.get("Name") or primary_email),
        primary_email=primary_email,
        remote_identity=remote_identity,
    )
