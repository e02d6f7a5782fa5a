from __future__ import annotations

from typing import Any, Dict, List, Protocol

Record = Dict[str, Any]


class DirectoryAdapter(Protocol):
    """Query/mutation contract of the remote directory used by the console.

    Records use the remote service's property names. Recoverable failures raise
    ``RemoteCallError``; a session that cannot be established or used raises
    ``DirectoryConnectionError``.
    """

    def connect(self) -> None:
        ...

    def is_connected(self) -> bool:
        ...

    def close(self) -> None:
        ...

    def get_recipient(self, identity: str) -> Record:
        ...

    def search_mailboxes(self, recipient_type_details: str, text: str, limit: int) -> List[Record]:
        ...

    def search_groups(self, text: str, limit: int) -> List[Record]:
        ...

    def search_dynamic_groups(self, text: str, limit: int) -> List[Record]:
        ...

    def get_dynamic_group(self, identity: str) -> Record:
        ...

    def list_mailbox_permissions(self, mailbox: str) -> List[Record]:
        ...

    def add_mailbox_permission(self, mailbox: str, user: str, auto_mapping: bool = True) -> None:
        ...

    def remove_mailbox_permission(self, mailbox: str, user: str) -> None:
        ...

    def list_recipient_permissions(self, mailbox: str) -> List[Record]:
        ...

    def add_recipient_permission(self, mailbox: str, trustee: str) -> None:
        ...

    def remove_recipient_permission(self, mailbox: str, trustee: str) -> None:
        ...

    def list_calendar_folders(self, mailbox: str) -> List[Record]:
        ...

    def list_folder_permissions(self, mailbox: str, folder_path: str) -> List[Record]:
        ...

    def list_group_members(self, group: str) -> List[Record]:
        ...

    def add_group_member(self, group: str, member: str) -> None:
        ...

    def remove_group_member(self, group: str, member: str) -> None:
        ...
