from __future__ import annotations

import functools
import os
import re
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

import structlog
from pymongo import ASCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.errors import ConnectionFailure, OperationFailure, PyMongoError

from directory.models import DirectoryConnectionError, RemoteCallError

from .base import DirectoryAdapter, Record

logger = structlog.get_logger(__name__)

RECIPIENT_PROJECTION = {
    "_id": 0,
    "Name": 1,
    "DisplayName": 1,
    "Alias": 1,
    "PrimarySmtpAddress": 1,
    "Identity": 1,
    "Guid": 1,
    "RecipientType": 1,
    "RecipientTypeDetails": 1,
    "GroupType": 1,
}

GROUP_TYPE_DETAILS = ["MailUniversalDistributionGroup", "MailUniversalSecurityGroup"]


def _guid(seed: str) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_DNS, f"{seed}.demo.local"))


def _recipient(alias: str, display_name: str, type_details: str, recipient_type: str, **extra: Any) -> Dict[str, Any]:
    doc = {
        "_id": alias,
        "Name": alias,
        "Alias": alias,
        "DisplayName": display_name,
        "PrimarySmtpAddress": f"{alias}@demo.local",
        "Identity": alias,
        "Guid": _guid(alias),
        "RecipientType": recipient_type,
        "RecipientTypeDetails": type_details,
    }
    doc.update(extra)
    return doc


@contextmanager
def mongo_errors(operation: str) -> Iterator[None]:
    """Map driver errors onto the directory contract's two failure types."""
    try:
        yield
    except ConnectionFailure as exc:
        raise DirectoryConnectionError(f"{operation}: demo directory unreachable: {exc}") from exc
    except PyMongoError as exc:
        raise RemoteCallError(f"{operation} failed: {exc}") from exc


F = TypeVar("F", bound=Callable[..., Any])


def _guarded(method: F) -> F:
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with mongo_errors(method.__name__):
            return method(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]


class DemoAdapter(DirectoryAdapter):
    """MongoDB-backed demo tenant for portfolio-safe workflows."""

    def __init__(
        self,
        mongo_uri: str,
        db_name: str = "mailbox_demo",
        seed: bool = True,
    ) -> None:
        if not mongo_uri:
            raise ValueError("mongo_uri is required for DemoAdapter.")

        self._mongo_uri = mongo_uri
        self._db_name = db_name
        self._seed = seed
        self._client: Optional[MongoClient] = None

    # region connection
    def connect(self) -> None:
        if self._client is not None:
            return
        client = MongoClient(self._mongo_uri, appname="MailboxConsoleDemo", serverSelectionTimeoutMS=5000)
        try:
            client.admin.command("ping")
        except PyMongoError as exc:
            client.close()
            raise DirectoryConnectionError(f"Demo directory unavailable: {exc}") from exc

        self._client = client
        db = client[self._db_name]
        self._recipients: Collection = db["recipients"]
        self._mailbox_permissions: Collection = db["mailbox_permissions"]
        self._recipient_permissions: Collection = db["recipient_permissions"]
        self._folders: Collection = db["calendar_folders"]
        self._folder_permissions: Collection = db["folder_permissions"]
        self._members: Collection = db["group_members"]

        self._ensure_indexes()
        auto_seed = os.getenv("DEMO_AUTO_SEED", "true").lower() in {"1", "true", "yes", "on"}
        if self._seed and auto_seed:
            self.seed_if_empty()
        logger.info("demo_directory_connected", db=self._db_name)

    def is_connected(self) -> bool:
        return self._client is not None

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _ensure_indexes(self) -> None:
        index_specs = [
            (self._recipients, [("RecipientTypeDetails", ASCENDING)], {"name": "idx_recipients_type"}),
            (self._recipients, [("PrimarySmtpAddress", ASCENDING)], {"unique": True, "name": "idx_recipients_smtp"}),
            (self._recipients, [("Guid", ASCENDING)], {"unique": True, "name": "idx_recipients_guid"}),
            (self._mailbox_permissions, [("Mailbox", ASCENDING), ("User", ASCENDING)], {"unique": True, "name": "idx_mbx_perm"}),
            (self._recipient_permissions, [("Mailbox", ASCENDING), ("Trustee", ASCENDING)], {"unique": True, "name": "idx_rcpt_perm"}),
            (self._folders, [("Mailbox", ASCENDING)], {"name": "idx_folders_mailbox"}),
            (self._folder_permissions, [("Mailbox", ASCENDING), ("FolderPath", ASCENDING)], {"name": "idx_folder_perm"}),
            (self._members, [("Group", ASCENDING), ("Member", ASCENDING)], {"unique": True, "name": "idx_members"}),
        ]

        for collection, keys, options in index_specs:
            try:
                collection.create_index(keys, **options)
            except OperationFailure as exc:
                if exc.code == 85:  # IndexOptionsConflict
                    continue
                raise

    # endregion

    def seed_if_empty(self, force: bool = False) -> None:
        self.connect()
        collections = (
            self._recipients,
            self._mailbox_permissions,
            self._recipient_permissions,
            self._folders,
            self._folder_permissions,
            self._members,
        )
        if force:
            for collection in collections:
                collection.delete_many({})
        elif self._recipients.estimated_document_count() > 0:
            return

        recipients = [
            _recipient("alex.rivera", "Alex Rivera", "UserMailbox", "UserMailbox"),
            _recipient("jane.doe", "Jane Doe", "UserMailbox", "UserMailbox"),
            _recipient("casey.lee", "Casey Lee", "UserMailbox", "UserMailbox"),
            _recipient("maria.gonzales", "Maria Gonzales", "UserMailbox", "UserMailbox"),
            _recipient("devon.price", "Devon Price", "UserMailbox", "UserMailbox"),
            _recipient("frank.patel", "Frank Patel", "UserMailbox", "UserMailbox"),
            _recipient("hse.inbox", "HSE Inbox", "SharedMailbox", "UserMailbox"),
            _recipient("ops.reports", "Operations Reports", "SharedMailbox", "UserMailbox"),
            _recipient("conf-room-houston", "Conf Room Houston 12A", "RoomMailbox", "UserMailbox"),
            _recipient("conf-room-midland", "Conf Room Midland 2", "RoomMailbox", "UserMailbox"),
            _recipient("projector-hou-01", "Projector HOU 01", "EquipmentMailbox", "UserMailbox"),
            _recipient(
                "dl-permian-operators",
                "DL Permian Operators",
                "MailUniversalDistributionGroup",
                "MailUniversalDistributionGroup",
                GroupType="Universal",
            ),
            _recipient(
                "sg-corporate-it",
                "SG Corporate IT",
                "MailUniversalSecurityGroup",
                "MailUniversalSecurityGroup",
                GroupType="Universal, SecurityEnabled",
            ),
            _recipient(
                "ddg-houston-staff",
                "DDG Houston Staff",
                "DynamicDistributionGroup",
                "DynamicDistributionGroup",
                RecipientFilter="((Office -eq 'Houston HQ') -and (RecipientType -eq 'UserMailbox'))",
                RecipientContainer="demo.local/Users",
            ),
        ]
        self._recipients.insert_many(recipients)

        self._mailbox_permissions.insert_many(
            [
                {"Mailbox": "hse.inbox", "User": "NT AUTHORITY\\SELF", "AccessRights": ["FullAccess", "ReadPermission"], "IsInherited": False, "Deny": False},
                {"Mailbox": "hse.inbox", "User": "maria.gonzales@demo.local", "AccessRights": ["FullAccess"], "IsInherited": False, "Deny": False},
                {"Mailbox": "hse.inbox", "User": "casey.lee@demo.local", "AccessRights": ["FullAccess"], "IsInherited": False, "Deny": False},
                {"Mailbox": "ops.reports", "User": "NT AUTHORITY\\SELF", "AccessRights": ["FullAccess", "ReadPermission"], "IsInherited": False, "Deny": False},
                {"Mailbox": "ops.reports", "User": "alex.rivera@demo.local", "AccessRights": ["FullAccess"], "IsInherited": False, "Deny": False},
                {"Mailbox": "ops.reports", "User": "DEMO\\Domain Admins", "AccessRights": ["FullAccess"], "IsInherited": True, "Deny": False},
            ]
        )
        self._recipient_permissions.insert_many(
            [
                {"Mailbox": "hse.inbox", "Trustee": "NT AUTHORITY\\SELF", "AccessRights": ["SendAs"], "Deny": False},
                {"Mailbox": "hse.inbox", "Trustee": "maria.gonzales@demo.local", "AccessRights": ["SendAs"], "Deny": False},
                {"Mailbox": "ops.reports", "Trustee": "devon.price@demo.local", "AccessRights": ["SendAs"], "Deny": False},
            ]
        )
        for room in ("conf-room-houston", "conf-room-midland", "projector-hou-01"):
            self._folders.insert_one({"Mailbox": room, "Name": "Calendar", "FolderPath": "/Calendar", "FolderType": "Calendar"})
            self._folder_permissions.insert_many(
                [
                    {"Mailbox": room, "FolderPath": "/Calendar", "User": "Default", "AccessRights": ["AvailabilityOnly"], "SharingPermissionFlags": ""},
                    {"Mailbox": room, "FolderPath": "/Calendar", "User": "Anonymous", "AccessRights": ["None"], "SharingPermissionFlags": ""},
                ]
            )
        self._folder_permissions.insert_one(
            {"Mailbox": "conf-room-houston", "FolderPath": "/Calendar", "User": "Casey Lee", "AccessRights": ["Editor"], "SharingPermissionFlags": "Delegate"}
        )
        self._members.insert_many(
            [
                {"Group": "dl-permian-operators", "Member": "alex.rivera"},
                {"Group": "dl-permian-operators", "Member": "devon.price"},
                {"Group": "sg-corporate-it", "Member": "casey.lee"},
                {"Group": "sg-corporate-it", "Member": "frank.patel"},
            ]
        )

    # region lookups
    def _require(self) -> None:
        if self._client is None:
            raise DirectoryConnectionError("Demo directory is not connected.")

    def _find_recipient(self, identity: str) -> Dict[str, Any]:
        self._require()
        identity = (identity or "").strip()
        if not identity:
            raise RemoteCallError("Identity is required.")
        exact = re.compile(f"^{re.escape(identity)}$", re.IGNORECASE)
        matches = list(
            self._recipients.find(
                {
                    "$or": [
                        {"_id": identity},
                        {"Guid": identity},
                        {"Alias": exact},
                        {"PrimarySmtpAddress": exact},
                        {"DisplayName": exact},
                    ]
                }
            ).limit(2)
        )
        if not matches:
            raise RemoteCallError(f"The operation couldn't be performed because object '{identity}' couldn't be found.")
        if len(matches) > 1:
            raise RemoteCallError(f"The operation couldn't be performed because '{identity}' matches multiple entries.")
        return matches[0]

    @staticmethod
    def _public(doc: Dict[str, Any]) -> Record:
        return {key: value for key, value in doc.items() if key in RECIPIENT_PROJECTION and key != "_id"}

    def _search(self, type_details: List[str], text: str, limit: int) -> List[Record]:
        self._require()
        regex = {"$regex": re.escape(text), "$options": "i"}
        criteria = {
            "RecipientTypeDetails": {"$in": type_details},
            "$or": [{"DisplayName": regex}, {"PrimarySmtpAddress": regex}, {"Alias": regex}],
        }
        cursor = self._recipients.find(criteria, RECIPIENT_PROJECTION).sort("DisplayName", ASCENDING).limit(int(limit))
        return list(cursor)

    @_guarded
    def get_recipient(self, identity: str) -> Record:
        return self._public(self._find_recipient(identity))

    @_guarded
    def search_mailboxes(self, recipient_type_details: str, text: str, limit: int) -> List[Record]:
        return self._search([recipient_type_details], text, limit)

    @_guarded
    def search_groups(self, text: str, limit: int) -> List[Record]:
        return self._search(GROUP_TYPE_DETAILS, text, limit)

    @_guarded
    def search_dynamic_groups(self, text: str, limit: int) -> List[Record]:
        return self._search(["DynamicDistributionGroup"], text, limit)

    @_guarded
    def get_dynamic_group(self, identity: str) -> Record:
        doc = self._find_recipient(identity)
        if doc.get("RecipientTypeDetails") != "DynamicDistributionGroup":
            raise RemoteCallError(f"'{identity}' is not a dynamic distribution group.")
        return {
            "Name": doc.get("Name"),
            "DisplayName": doc.get("DisplayName"),
            "PrimarySmtpAddress": doc.get("PrimarySmtpAddress"),
            "RecipientFilter": doc.get("RecipientFilter"),
            "RecipientContainer": doc.get("RecipientContainer"),
        }

    # endregion

    # region mailbox permissions
    def _trustee_name(self, identity: str) -> str:
        # Entries are stored the way the service lists them: by primary address.
        try:
            return self._find_recipient(identity)["PrimarySmtpAddress"]
        except RemoteCallError:
            return identity

    @_guarded
    def list_mailbox_permissions(self, mailbox: str) -> List[Record]:
        doc = self._find_recipient(mailbox)
        cursor = self._mailbox_permissions.find({"Mailbox": doc["_id"]}, {"_id": 0, "Mailbox": 0})
        return list(cursor)

    @_guarded
    def add_mailbox_permission(self, mailbox: str, user: str, auto_mapping: bool = True) -> None:
        doc = self._find_recipient(mailbox)
        trustee = self._find_recipient(user)["PrimarySmtpAddress"]
        existing = self._mailbox_permissions.find_one({"Mailbox": doc["_id"], "User": trustee})
        if existing and "FullAccess" in existing.get("AccessRights", []):
            raise RemoteCallError(f"'{trustee}' already has FullAccess on '{doc['DisplayName']}'.")
        self._mailbox_permissions.update_one(
            {"Mailbox": doc["_id"], "User": trustee},
            {
                "$set": {"IsInherited": False, "Deny": False, "AutoMapping": bool(auto_mapping)},
                "$addToSet": {"AccessRights": "FullAccess"},
            },
            upsert=True,
        )

    @_guarded
    def remove_mailbox_permission(self, mailbox: str, user: str) -> None:
        doc = self._find_recipient(mailbox)
        trustee = self._trustee_name(user)
        entry = {"Mailbox": doc["_id"], "User": trustee, "IsInherited": False}
        result = self._mailbox_permissions.update_one(
            dict(entry, AccessRights="FullAccess"),
            {"$pull": {"AccessRights": "FullAccess"}},
        )
        if result.matched_count == 0:
            raise RemoteCallError(f"No FullAccess entry for '{user}' on '{doc['DisplayName']}'.")
        # Other rights held on the same entry survive the removal.
        self._mailbox_permissions.delete_one(dict(entry, AccessRights={"$size": 0}))

    @_guarded
    def list_recipient_permissions(self, mailbox: str) -> List[Record]:
        doc = self._find_recipient(mailbox)
        return list(self._recipient_permissions.find({"Mailbox": doc["_id"]}, {"_id": 0, "Mailbox": 0}))

    @_guarded
    def add_recipient_permission(self, mailbox: str, trustee: str) -> None:
        doc = self._find_recipient(mailbox)
        name = self._find_recipient(trustee)["PrimarySmtpAddress"]
        if self._recipient_permissions.find_one({"Mailbox": doc["_id"], "Trustee": name}):
            raise RemoteCallError(f"'{name}' already has SendAs on '{doc['DisplayName']}'.")
        self._recipient_permissions.insert_one(
            {"Mailbox": doc["_id"], "Trustee": name, "AccessRights": ["SendAs"], "Deny": False}
        )

    @_guarded
    def remove_recipient_permission(self, mailbox: str, trustee: str) -> None:
        doc = self._find_recipient(mailbox)
        name = self._trustee_name(trustee)
        result = self._recipient_permissions.delete_one({"Mailbox": doc["_id"], "Trustee": name})
        if result.deleted_count == 0:
            raise RemoteCallError(f"No SendAs entry for '{trustee}' on '{doc['DisplayName']}'.")

    # endregion

    # region calendar
    @_guarded
    def list_calendar_folders(self, mailbox: str) -> List[Record]:
        doc = self._find_recipient(mailbox)
        return list(self._folders.find({"Mailbox": doc["_id"]}, {"_id": 0, "Mailbox": 0}))

    @_guarded
    def list_folder_permissions(self, mailbox: str, folder_path: str) -> List[Record]:
        doc = self._find_recipient(mailbox)
        cursor = self._folder_permissions.find(
            {"Mailbox": doc["_id"], "FolderPath": folder_path},
            {"_id": 0, "Mailbox": 0, "FolderPath": 0},
        )
        return list(cursor)

    # endregion

    # region membership
    @_guarded
    def list_group_members(self, group: str) -> List[Record]:
        doc = self._find_recipient(group)
        member_ids = [entry["Member"] for entry in self._members.find({"Group": doc["_id"]})]
        if not member_ids:
            return []
        cursor = self._recipients.find({"_id": {"$in": member_ids}}, RECIPIENT_PROJECTION).sort("DisplayName", ASCENDING)
        return list(cursor)

    @_guarded
    def add_group_member(self, group: str, member: str) -> None:
        group_doc = self._find_recipient(group)
        member_doc = self._find_recipient(member)
        if group_doc.get("RecipientTypeDetails") not in GROUP_TYPE_DETAILS:
            raise RemoteCallError(f"'{group_doc['DisplayName']}' does not accept explicit members.")
        membership = {"Group": group_doc["_id"], "Member": member_doc["_id"]}
        if self._members.find_one(membership):
            raise RemoteCallError(
                f"The recipient '{member_doc['PrimarySmtpAddress']}' is already a member of the group '{group_doc['DisplayName']}'."
            )
        self._members.insert_one(membership)

    @_guarded
    def remove_group_member(self, group: str, member: str) -> None:
        group_doc = self._find_recipient(group)
        member_doc = self._find_recipient(member)
        result = self._members.delete_one({"Group": group_doc["_id"], "Member": member_doc["_id"]})
        if result.deleted_count == 0:
            raise RemoteCallError(
                f"The recipient '{member_doc['PrimarySmtpAddress']}' isn't a member of the group '{group_doc['DisplayName']}'."
            )

    # endregion
