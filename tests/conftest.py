from __future__ import annotations

from typing import Any, Dict, List, Optional, Set

import pytest

from directory.audit import AuditLog
from directory.models import DirectoryConnectionError, DirectoryObjectRef, ObjectKind, RemoteCallError
from directory.session import ConsoleSession


class FakeDirectory:
    """In-memory stand-in for the remote directory that records every call."""

    def __init__(self) -> None:
        self.connected = False
        self.connect_calls = 0
        self.refuse_connection = False
        self.calls: List[tuple] = []
        self.failing: Set[str] = set()
        self.lost: Set[str] = set()
        self.recipients: List[Dict[str, Any]] = []
        self.mailbox_permissions: Dict[str, List[Dict[str, Any]]] = {}
        self.recipient_permissions: Dict[str, List[Dict[str, Any]]] = {}
        self.folders: Dict[str, List[Dict[str, Any]]] = {}
        self.folder_permissions: Dict[str, List[Dict[str, Any]]] = {}
        self.members: Dict[str, List[str]] = {}

    # region helpers
    def add_recipient(self, alias: str, display_name: str, type_details: str, **extra: Any) -> Dict[str, Any]:
        record = {
            "Name": alias,
            "Alias": alias,
            "DisplayName": display_name,
            "PrimarySmtpAddress": f"{alias}@contoso.com",
            "Identity": alias,
            "Guid": f"guid-{alias}",
            "RecipientType": type_details,
            "RecipientTypeDetails": type_details,
        }
        record.update(extra)
        self.recipients.append(record)
        return record

    def _track(self, name: str, *args: Any) -> None:
        self.calls.append((name,) + args)
        if name in self.lost:
            raise DirectoryConnectionError(f"{name}: session lost")
        if name in self.failing:
            raise RemoteCallError(f"{name}: simulated failure")

    def call_count(self, name: Optional[str] = None) -> int:
        if name is None:
            return len(self.calls)
        return sum(1 for call in self.calls if call[0] == name)

    def _find(self, identity: str) -> Dict[str, Any]:
        needle = (identity or "").strip().lower()
        matches = [
            record
            for record in self.recipients
            if needle
            in {
                (record.get(key) or "").lower()
                for key in ("Guid", "Alias", "PrimarySmtpAddress", "DisplayName")
            }
        ]
        if not matches:
            raise RemoteCallError(f"The object '{identity}' couldn't be found.")
        if len(matches) > 1:
            raise RemoteCallError(f"'{identity}' is ambiguous.")
        return matches[0]

    def _search(self, types: List[str], text: str, limit: int) -> List[Dict[str, Any]]:
        needle = text.lower()
        found = [
            dict(record)
            for record in self.recipients
            if record["RecipientTypeDetails"] in types
            and any(needle in (record.get(key) or "").lower() for key in ("DisplayName", "PrimarySmtpAddress", "Alias"))
        ]
        return found[:limit]

    # endregion

    def connect(self) -> None:
        self.connect_calls += 1
        if self.refuse_connection:
            raise DirectoryConnectionError("Connect-ExchangeOnline failed: unreachable")
        self.connected = True

    def is_connected(self) -> bool:
        return self.connected

    def close(self) -> None:
        self.connected = False

    def get_recipient(self, identity: str) -> Dict[str, Any]:
        self._track("get_recipient", identity)
        return dict(self._find(identity))

    def search_mailboxes(self, recipient_type_details: str, text: str, limit: int) -> List[Dict[str, Any]]:
        self._track(f"search_mailboxes:{recipient_type_details}", text, limit)
        return self._search([recipient_type_details], text, limit)

    def search_groups(self, text: str, limit: int) -> List[Dict[str, Any]]:
        self._track("search_groups", text, limit)
        return self._search(["MailUniversalDistributionGroup", "MailUniversalSecurityGroup"], text, limit)

    def search_dynamic_groups(self, text: str, limit: int) -> List[Dict[str, Any]]:
        self._track("search_dynamic_groups", text, limit)
        return self._search(["DynamicDistributionGroup"], text, limit)

    def get_dynamic_group(self, identity: str) -> Dict[str, Any]:
        self._track("get_dynamic_group", identity)
        return dict(self._find(identity))

    def list_mailbox_permissions(self, mailbox: str) -> List[Dict[str, Any]]:
        self._track("list_mailbox_permissions", mailbox)
        return [dict(entry) for entry in self.mailbox_permissions.get(self._find(mailbox)["Guid"], [])]

    def add_mailbox_permission(self, mailbox: str, user: str, auto_mapping: bool = True) -> None:
        self._track("add_mailbox_permission", mailbox, user, auto_mapping)
        entries = self.mailbox_permissions.setdefault(self._find(mailbox)["Guid"], [])
        name = self._find(user)["PrimarySmtpAddress"]
        held = [entry for entry in entries if not entry.get("Deny") and not entry.get("IsInherited")]
        if any(entry["User"] == name for entry in held):
            raise RemoteCallError(f"'{name}' already has FullAccess.")
        entries.append({"User": name, "AccessRights": ["FullAccess"], "IsInherited": False, "Deny": False})

    def remove_mailbox_permission(self, mailbox: str, user: str) -> None:
        self._track("remove_mailbox_permission", mailbox, user)
        entries = self.mailbox_permissions.setdefault(self._find(mailbox)["Guid"], [])
        names = {user.lower()}
        try:
            names.add(self._find(user)["PrimarySmtpAddress"].lower())
        except RemoteCallError:
            pass
        remaining = [entry for entry in entries if entry["User"].lower() not in names]
        if len(remaining) == len(entries):
            raise RemoteCallError(f"No FullAccess entry for '{user}'.")
        entries[:] = remaining

    def list_recipient_permissions(self, mailbox: str) -> List[Dict[str, Any]]:
        self._track("list_recipient_permissions", mailbox)
        return [dict(entry) for entry in self.recipient_permissions.get(self._find(mailbox)["Guid"], [])]

    def add_recipient_permission(self, mailbox: str, trustee: str) -> None:
        self._track("add_recipient_permission", mailbox, trustee)
        entries = self.recipient_permissions.setdefault(self._find(mailbox)["Guid"], [])
        name = self._find(trustee)["PrimarySmtpAddress"]
        if any(entry["Trustee"] == name for entry in entries):
            raise RemoteCallError(f"'{name}' already has SendAs.")
        entries.append({"Trustee": name, "AccessRights": ["SendAs"]})

    def remove_recipient_permission(self, mailbox: str, trustee: str) -> None:
        self._track("remove_recipient_permission", mailbox, trustee)
        entries = self.recipient_permissions.setdefault(self._find(mailbox)["Guid"], [])
        names = {trustee.lower()}
        try:
            names.add(self._find(trustee)["PrimarySmtpAddress"].lower())
        except RemoteCallError:
            pass
        remaining = [entry for entry in entries if entry["Trustee"].lower() not in names]
        if len(remaining) == len(entries):
            raise RemoteCallError(f"No SendAs entry for '{trustee}'.")
        entries[:] = remaining

    def list_calendar_folders(self, mailbox: str) -> List[Dict[str, Any]]:
        self._track("list_calendar_folders", mailbox)
        return [dict(entry) for entry in self.folders.get(mailbox.lower(), [])]

    def list_folder_permissions(self, mailbox: str, folder_path: str) -> List[Dict[str, Any]]:
        self._track("list_folder_permissions", mailbox, folder_path)
        return [dict(entry) for entry in self.folder_permissions.get(f"{mailbox.lower()}:{folder_path}", [])]

    def list_group_members(self, group: str) -> List[Dict[str, Any]]:
        self._track("list_group_members", group)
        guids = self.members.get(self._find(group)["Guid"], [])
        return [dict(self._find(guid)) for guid in guids]

    def add_group_member(self, group: str, member: str) -> None:
        self._track("add_group_member", group, member)
        members = self.members.setdefault(self._find(group)["Guid"], [])
        guid = self._find(member)["Guid"]
        if guid in members:
            raise RemoteCallError(f"The recipient '{member}' is already a member of the group.")
        members.append(guid)

    def remove_group_member(self, group: str, member: str) -> None:
        self._track("remove_group_member", group, member)
        members = self.members.setdefault(self._find(group)["Guid"], [])
        guid = self._find(member)["Guid"]
        if guid not in members:
            raise RemoteCallError(f"The recipient '{member}' isn't a member of the group.")
        members.remove(guid)


@pytest.fixture
def directory() -> FakeDirectory:
    fake = FakeDirectory()
    fake.add_recipient("alice", "Alice Adams", "UserMailbox")
    fake.add_recipient("bob", "Bob Brown", "UserMailbox")
    fake.add_recipient("carol", "Carol Chen", "UserMailbox")
    fake.add_recipient("sales", "Sales Team", "SharedMailbox")
    fake.add_recipient("conf-room-bookings", "Conf Room Bookings", "SharedMailbox")
    fake.add_recipient("conf-room-a", "Conf Room A", "RoomMailbox")
    fake.add_recipient("conf-room-b", "Conf Room B", "RoomMailbox")
    fake.add_recipient("conf-room-projector", "Conf Room Projector", "EquipmentMailbox")
    fake.add_recipient(
        "conf-room-owners", "Conf Room Owners", "MailUniversalDistributionGroup", GroupType="Universal"
    )
    fake.add_recipient(
        "conf-room-admins",
        "Conf Room Admins",
        "MailUniversalSecurityGroup",
        GroupType="Universal, SecurityEnabled",
    )
    fake.add_recipient(
        "conf-room-everyone",
        "Conf Room Everyone",
        "DynamicDistributionGroup",
        RecipientFilter="(Office -eq 'HQ')",
        RecipientContainer="contoso.com/Users",
    )

    fake.mailbox_permissions["guid-sales"] = [
        {"User": "NT AUTHORITY\\SELF", "AccessRights": ["FullAccess", "ReadPermission"], "IsInherited": False, "Deny": False},
        {"User": "alice@contoso.com", "AccessRights": ["FullAccess"], "IsInherited": False, "Deny": False},
        {"User": "CONTOSO\\Domain Admins", "AccessRights": ["FullAccess"], "IsInherited": True, "Deny": False},
        {"User": "carol@contoso.com", "AccessRights": ["FullAccess"], "IsInherited": False, "Deny": True},
    ]
    fake.recipient_permissions["guid-sales"] = [
        {"Trustee": "NT AUTHORITY\\SELF", "AccessRights": ["SendAs"]},
        {"Trustee": "Alice Adams", "AccessRights": ["SendAs"]},
        {"Trustee": "bob@contoso.com", "AccessRights": ["SendAs"]},
    ]
    fake.folders["conf-room-a@contoso.com"] = [
        {"Name": "Calendar", "FolderPath": "/Calendar", "FolderType": "Calendar"},
    ]
    fake.folder_permissions["conf-room-a@contoso.com:/Calendar"] = [
        {"User": "Default", "AccessRights": ["AvailabilityOnly"], "SharingPermissionFlags": ""},
        {"User": "bob", "AccessRights": ["Editor"], "SharingPermissionFlags": "Delegate"},
        {"User": "Anonymous", "AccessRights": ["None"], "SharingPermissionFlags": ""},
    ]
    fake.members["guid-conf-room-owners"] = ["guid-alice"]
    return fake


@pytest.fixture
def audit(tmp_path) -> AuditLog:
    return AuditLog(str(tmp_path / "audit.log"), operator="tester")


@pytest.fixture
def console(directory, audit) -> ConsoleSession:
    return ConsoleSession(directory, audit)


def make_ref(kind: ObjectKind, alias: str, display_name: str) -> DirectoryObjectRef:
    return DirectoryObjectRef(
        kind=kind,
        display_name=display_name,
        primary_email=f"{alias}@contoso.com",
        remote_identity=f"guid-{alias}",
    )


@pytest.fixture
def sales_ref() -> DirectoryObjectRef:
    return make_ref(ObjectKind.SHARED_MAILBOX, "sales", "Sales Team")


@pytest.fixture
def room_ref() -> DirectoryObjectRef:
    return make_ref(ObjectKind.ROOM_MAILBOX, "conf-room-a", "Conf Room A")


@pytest.fixture
def group_ref() -> DirectoryObjectRef:
    return make_ref(ObjectKind.DISTRIBUTION_GROUP, "conf-room-owners", "Conf Room Owners")


@pytest.fixture
def dynamic_ref() -> DirectoryObjectRef:
    return make_ref(ObjectKind.DYNAMIC_DISTRIBUTION_GROUP, "conf-room-everyone", "Conf Room Everyone")
