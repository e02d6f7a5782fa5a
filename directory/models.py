from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar, Union

T = TypeVar("T")


class DirectoryError(Exception):
    """Base class for directory failures."""


class RemoteCallError(DirectoryError):
    """A single remote call failed (not found, already set, policy block...)."""


class DirectoryConnectionError(DirectoryError):
    """The remote session could not be established or is no longer usable."""


class ObjectKind(str, enum.Enum):
    SHARED_MAILBOX = "SharedMailbox"
    ROOM_MAILBOX = "RoomMailbox"
    EQUIPMENT_MAILBOX = "EquipmentMailbox"
    DISTRIBUTION_GROUP = "DistributionGroup"
    MAIL_SECURITY_GROUP = "MailSecurityGroup"
    DYNAMIC_DISTRIBUTION_GROUP = "DynamicDistributionGroup"

    @property
    def label(self) -> str:
        return KIND_LABELS[self]

    @property
    def is_mailbox(self) -> bool:
        return self in MAILBOX_KINDS

    @property
    def is_resource(self) -> bool:
        return self in (ObjectKind.ROOM_MAILBOX, ObjectKind.EQUIPMENT_MAILBOX)

    @property
    def is_static_group(self) -> bool:
        return self in (ObjectKind.DISTRIBUTION_GROUP, ObjectKind.MAIL_SECURITY_GROUP)


KIND_LABELS: Dict[ObjectKind, str] = {
    ObjectKind.SHARED_MAILBOX: "Shared Mailbox",
    ObjectKind.ROOM_MAILBOX: "Room Mailbox",
    ObjectKind.EQUIPMENT_MAILBOX: "Equipment Mailbox",
    ObjectKind.DISTRIBUTION_GROUP: "Distribution Group",
    ObjectKind.MAIL_SECURITY_GROUP: "Mail-enabled Security Group",
    ObjectKind.DYNAMIC_DISTRIBUTION_GROUP: "Dynamic Distribution Group",
}

MAILBOX_KINDS = (
    ObjectKind.SHARED_MAILBOX,
    ObjectKind.ROOM_MAILBOX,
    ObjectKind.EQUIPMENT_MAILBOX,
)

# type_details values that do not come from the remote service
TYPE_SYSTEM = "System"
TYPE_SPECIAL = "Special"
TYPE_UNRESOLVED = "Unresolved"
TYPE_UNKNOWN = "Unknown"


@dataclass(frozen=True)
class DirectoryObjectRef:
    kind: ObjectKind
    display_name: str
    primary_email: str
    remote_identity: str

    @property
    def cache_key(self) -> Tuple[ObjectKind, str]:
        return (self.kind, self.remote_identity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "displayName": self.display_name,
            "primaryEmail": self.primary_email,
            "remoteIdentity": self.remote_identity,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "DirectoryObjectRef":
        try:
            kind = ObjectKind(payload["kind"])
            remote_identity = str(payload["remoteIdentity"])
        except (KeyError, ValueError) as exc:
            raise ValueError("Object reference requires a valid kind and remoteIdentity.") from exc
        return cls(
            kind=kind,
            display_name=str(payload.get("displayName") or ""),
            primary_email=str(payload.get("primaryEmail") or ""),
            remote_identity=remote_identity,
        )


@dataclass(frozen=True)
class ResolvedIdentity:
    display_name: str = ""
    primary_email: str = ""
    type_details: str = TYPE_UNKNOWN
    target_id: str = ""


@dataclass(frozen=True)
class PermissionRow:
    identity: ResolvedIdentity
    full_access: bool = False
    send_as: bool = False


@dataclass(frozen=True)
class CalendarPermissionRow:
    identity: ResolvedIdentity
    access_rights_text: str = ""
    sharing_flags_text: str = ""


@dataclass(frozen=True)
class GroupMemberRow:
    name: str
    email: str
    type: str


@dataclass(frozen=True)
class DynamicGroupRule:
    name: str
    email: str
    recipient_filter: str
    recipient_container: str


@dataclass(frozen=True)
class MailboxDetails:
    ref: DirectoryObjectRef
    header: str
    permissions: Tuple[PermissionRow, ...] = ()

    @property
    def kind(self) -> ObjectKind:
        return self.ref.kind


@dataclass(frozen=True)
class ResourceMailboxDetails:
    ref: DirectoryObjectRef
    header: str
    permissions: Tuple[PermissionRow, ...] = ()
    calendar_permissions: Tuple[CalendarPermissionRow, ...] = ()

    @property
    def kind(self) -> ObjectKind:
        return self.ref.kind


@dataclass(frozen=True)
class GroupDetails:
    ref: DirectoryObjectRef
    header: str
    members: Tuple[GroupMemberRow, ...] = ()

    @property
    def kind(self) -> ObjectKind:
        return self.ref.kind


@dataclass(frozen=True)
class DynamicGroupDetails:
    ref: DirectoryObjectRef
    header: str
    rule: DynamicGroupRule

    @property
    def kind(self) -> ObjectKind:
        return self.ref.kind


DetailsBundle = Union[MailboxDetails, ResourceMailboxDetails, GroupDetails, DynamicGroupDetails]


@dataclass(frozen=True)
class SearchResult:
    refs: Tuple[DirectoryObjectRef, ...] = ()
    failed_buckets: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RemoteResult(Generic[T]):
    """Outcome of one remote call: either a value or the remote error message."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "RemoteResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> "RemoteResult[T]":
        return cls(ok=False, error=error)

    def unwrap(self) -> T:
        if not self.ok:
            raise RemoteCallError(self.error or "Remote call failed.")
        return self.value  # type: ignore[return-value]


def call_remote(func: Callable[..., T], *args: Any, **kwargs: Any) -> RemoteResult[T]:
    """Run one adapter call, turning recoverable remote errors into a failed result.

    Connection failures are not recoverable at the call site and propagate.
    """
    try:
        return RemoteResult.success(func(*args, **kwargs))
    except RemoteCallError as exc:
        return RemoteResult.failure(str(exc) or exc.__class__.__name__)


@dataclass(frozen=True)
class IdentityOutcome:
    identity: str
    action: str
    ok: bool
    message: str


@dataclass
class BatchReport:
    target: DirectoryObjectRef
    outcomes: List[IdentityOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.ok)

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.ok)

    def summary(self) -> str:
        return f"{self.succeeded} succeeded, {self.failed} failed or skipped on {self.target.display_name}."


@dataclass(frozen=True)
class ActionStatus:
    ok: bool
    message: str
    payload: Any = None
