from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List

import structlog

from adapters.base import DirectoryAdapter

from .audit import AuditLog
from .identity import CachingResolver, IdentityResolver, is_self_principal, recipient_key
from .models import (
    BatchReport,
    CalendarPermissionRow,
    DirectoryObjectRef,
    DynamicGroupRule,
    GroupMemberRow,
    IdentityOutcome,
    PermissionRow,
    ResolvedIdentity,
    call_remote,
)

logger = structlog.get_logger(__name__)

FULL_ACCESS = "FullAccess"
SEND_AS = "SendAs"
CALENDAR_FOLDER_TYPE = "Calendar"


def _rights(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(part).strip() for part in value]


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes"}
    return bool(value)


def _ordered(identities: Iterable[str]) -> List[str]:
    # Batches run in a stable order so the audit trail reads the same way every time.
    return sorted(set(identities), key=lambda value: (value.lower(), value))


class PermissionService:
    """Read and write paths for mailbox permissions and group membership."""

    def __init__(self, adapter: DirectoryAdapter, resolver: IdentityResolver, audit: AuditLog) -> None:
        self._adapter = adapter
        self._resolver = resolver
        self._audit = audit

    # region read path
    def get_mailbox_access_state(self, mailbox_identity: str) -> List[PermissionRow]:
        full_access_entries = call_remote(self._adapter.list_mailbox_permissions, mailbox_identity).unwrap() or []
        send_as_entries = call_remote(self._adapter.list_recipient_permissions, mailbox_identity).unwrap() or []

        full_access_trustees: List[str] = []
        for entry in full_access_entries:
            user = str(entry.get("User") or "").strip()
            if not user or is_self_principal(user):
                continue
            if FULL_ACCESS not in _rights(entry.get("AccessRights")):
                continue
            if _truthy(entry.get("IsInherited")) or _truthy(entry.get("Deny")):
                continue
            full_access_trustees.append(user)

        send_as_trustees: List[str] = []
        for entry in send_as_entries:
            trustee = str(entry.get("Trustee") or "").strip()
            if not trustee or is_self_principal(trustee):
                continue
            if SEND_AS not in _rights(entry.get("AccessRights")):
                continue
            if _truthy(entry.get("Deny")):
                continue
            send_as_trustees.append(trustee)

        resolver = CachingResolver(self._resolver)
        identities: Dict[str, ResolvedIdentity] = {}
        flags: Dict[str, Dict[str, bool]] = {}

        def collect(token: str, right: str) -> None:
            identity = resolver.resolve(token)
            key = (identity.target_id or token).lower()
            identities.setdefault(key, identity)
            flags.setdefault(key, {FULL_ACCESS: False, SEND_AS: False})[right] = True

        for trustee in full_access_trustees:
            collect(trustee, FULL_ACCESS)
        for trustee in send_as_trustees:
            collect(trustee, SEND_AS)

        rows = [
            PermissionRow(identity=identities[key], full_access=held[FULL_ACCESS], send_as=held[SEND_AS])
            for key, held in flags.items()
        ]
        rows.sort(key=lambda row: (row.identity.type_details.lower(), row.identity.display_name.lower()))
        return rows

    def get_calendar_permissions(self, mailbox_primary_email: str) -> List[CalendarPermissionRow]:
        folders = call_remote(self._adapter.list_calendar_folders, mailbox_primary_email).unwrap() or []
        if not folders:
            return []
        folder = next(
            (entry for entry in folders if str(entry.get("FolderType") or "") == CALENDAR_FOLDER_TYPE),
            folders[0],
        )
        folder_path = str(folder.get("FolderPath") or folder.get("Name") or CALENDAR_FOLDER_TYPE)
        entries = call_remote(self._adapter.list_folder_permissions, mailbox_primary_email, folder_path).unwrap() or []

        resolver = CachingResolver(self._resolver)
        rows = [
            CalendarPermissionRow(
                identity=resolver.resolve(str(entry.get("User") or "")),
                access_rights_text=", ".join(_rights(entry.get("AccessRights"))),
                sharing_flags_text=", ".join(_rights(entry.get("SharingPermissionFlags"))),
            )
            for entry in entries
        ]
        rows.sort(key=lambda row: row.identity.display_name.lower())
        return rows

    def get_group_members(self, group_identity: str) -> List[GroupMemberRow]:
        members = call_remote(self._adapter.list_group_members, group_identity).unwrap() or []
        return [
            GroupMemberRow(
                name=str(member.get("DisplayName") or member.get("Name") or ""),
                email=str(member.get("PrimarySmtpAddress") or ""),
                type=str(member.get("RecipientTypeDetails") or member.get("RecipientType") or ""),
            )
            for member in members
        ]

    def get_dynamic_group_rule(self, group_identity: str) -> DynamicGroupRule:
        record = call_remote(self._adapter.get_dynamic_group, group_identity).unwrap() or {}
        return DynamicGroupRule(
            name=str(record.get("DisplayName") or record.get("Name") or ""),
            email=str(record.get("PrimarySmtpAddress") or ""),
            recipient_filter=str(record.get("RecipientFilter") or ""),
            recipient_container=str(record.get("RecipientContainer") or ""),
        )

    # endregion

    # region write path
    def add_group_members(self, group: DirectoryObjectRef, identities: Iterable[str]) -> BatchReport:
        return self._membership_batch(group, identities, "add", self._adapter.add_group_member)

    def remove_group_members(self, group: DirectoryObjectRef, identities: Iterable[str]) -> BatchReport:
        return self._membership_batch(group, identities, "remove", self._adapter.remove_group_member)

    def _membership_batch(
        self,
        group: DirectoryObjectRef,
        identities: Iterable[str],
        action: str,
        operation: Callable[[str, str], None],
    ) -> BatchReport:
        report = BatchReport(target=group)
        label = "Add member" if action == "add" else "Remove member"
        preposition = "to" if action == "add" else "from"
        for identity in _ordered(identities):
            recipient = self._resolver.try_resolve_recipient(identity)
            if recipient is None:
                message = f"{label}: could not resolve '{identity}'; skipped."
                self._audit.warning(message)
                report.outcomes.append(IdentityOutcome(identity, action, False, message))
                continue

            member = recipient_key(recipient, fallback=identity)
            self._audit.info(f"{label} '{identity}' {preposition} group '{group.display_name}'.")
            result = call_remote(operation, group.remote_identity, member)
            if result.ok:
                message = f"{label} '{identity}' {preposition} group '{group.display_name}' succeeded."
                self._audit.info(message)
            else:
                message = f"{label} '{identity}' {preposition} group '{group.display_name}' failed: {result.error}"
                self._audit.warning(message)
            report.outcomes.append(IdentityOutcome(identity, action, result.ok, message))
        return report

    def grant_mailbox_rights(
        self,
        mailbox: DirectoryObjectRef,
        identities: Iterable[str],
        do_full_access: bool,
        do_send_as: bool,
    ) -> BatchReport:
        report = BatchReport(target=mailbox)
        for identity in _ordered(identities):
            recipient = self._resolver.try_resolve_recipient(identity)
            if recipient is None:
                message = f"Grant: could not resolve '{identity}'; skipped."
                self._audit.warning(message)
                report.outcomes.append(IdentityOutcome(identity, "grant", False, message))
                continue

            trustee = recipient_key(recipient, fallback=identity)
            if do_full_access:
                report.outcomes.append(
                    self._attempt(
                        identity,
                        "Grant FullAccess",
                        mailbox,
                        lambda: self._adapter.add_mailbox_permission(mailbox.remote_identity, trustee, True),
                    )
                )
            if do_send_as:
                report.outcomes.append(
                    self._attempt(
                        identity,
                        "Grant SendAs",
                        mailbox,
                        lambda: self._adapter.add_recipient_permission(mailbox.remote_identity, trustee),
                    )
                )
        return report

    def revoke_mailbox_rights(
        self,
        mailbox: DirectoryObjectRef,
        identities_or_target_ids: Iterable[str],
        do_full_access: bool,
        do_send_as: bool,
    ) -> BatchReport:
        report = BatchReport(target=mailbox)
        for token in _ordered(identities_or_target_ids):
            recipient = self._resolver.try_resolve_recipient(token)
            if recipient is None:
                # The removal call may still match a stale entry by its listed identity.
                trustee = token
                self._audit.warning(f"Revoke: could not resolve '{token}'; using it verbatim as the removal target.")
            else:
                trustee = recipient_key(recipient, fallback=token)

            if do_full_access:
                report.outcomes.append(
                    self._attempt(
                        token,
                        "Revoke FullAccess",
                        mailbox,
                        lambda: self._adapter.remove_mailbox_permission(mailbox.remote_identity, trustee),
                    )
                )
            if do_send_as:
                report.outcomes.append(
                    self._attempt(
                        token,
                        "Revoke SendAs",
                        mailbox,
                        lambda: self._adapter.remove_recipient_permission(mailbox.remote_identity, trustee),
                    )
                )
        return report

    def _attempt(
        self,
        identity: str,
        action: str,
        mailbox: DirectoryObjectRef,
        operation: Callable[[], None],
    ) -> IdentityOutcome:
        self._audit.info(f"{action} for '{identity}' on mailbox '{mailbox.display_name}'.")
        result = call_remote(operation)
        if result.ok:
            message = f"{action} for '{identity}' on mailbox '{mailbox.display_name}' succeeded."
            self._audit.info(message)
        else:
            message = f"{action} for '{identity}' on mailbox '{mailbox.display_name}' failed: {result.error}"
            self._audit.warning(message)
            logger.warning("mailbox_right_failed", action=action, identity=identity, mailbox=mailbox.remote_identity)
        return IdentityOutcome(identity, action, result.ok, message)

    # endregion
