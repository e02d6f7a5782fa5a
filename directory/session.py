from __future__ import annotations

from typing import Any, Callable, Iterable, List, Optional

import structlog

from adapters.base import DirectoryAdapter

from .audit import AuditLog
from .cache import SessionCaches, calendar_key
from .identity import IdentityResolver, parse_identities
from .models import (
    ActionStatus,
    BatchReport,
    CalendarPermissionRow,
    DetailsBundle,
    DirectoryConnectionError,
    DirectoryError,
    DirectoryObjectRef,
    DynamicGroupDetails,
    GroupDetails,
    MailboxDetails,
    ObjectKind,
    ResourceMailboxDetails,
)
from .permissions import PermissionService
from .search import DEFAULT_MIN_LENGTH, DEFAULT_RESULT_CAP, SearchEngine

logger = structlog.get_logger(__name__)

NO_VALID_IDENTITIES = "No valid identities were entered."


class ConsoleSession:
    """One operator's session against the shared remote directory connection.

    Owns the selected object and an audit log bound to the operator. Caches
    may be shared with other operators' sessions. Every operator action goes
    through :meth:`run_action`.
    """

    def __init__(
        self,
        adapter: DirectoryAdapter,
        audit: AuditLog,
        min_search_length: int = DEFAULT_MIN_LENGTH,
        search_result_cap: int = DEFAULT_RESULT_CAP,
        caches: Optional[SessionCaches] = None,
    ) -> None:
        self.adapter = adapter
        self.audit = audit
        self.caches = caches if caches is not None else SessionCaches()
        self.resolver = IdentityResolver(adapter)
        self.permissions = PermissionService(adapter, self.resolver, audit)
        self.search_engine = SearchEngine(
            adapter,
            self.caches.search,
            min_length=min_search_length,
            result_cap=search_result_cap,
            connect=self.ensure_connected,
        )
        self.selected: Optional[DirectoryObjectRef] = None

    @property
    def operator(self) -> str:
        return self.audit.operator

    def ensure_connected(self) -> None:
        if self.adapter.is_connected():
            return
        logger.info("directory_connecting")
        self.adapter.connect()

    def run_action(self, description: str, action: Callable[[], ActionStatus]) -> ActionStatus:
        """Top-level handler: cross-cutting failures become one status and one error line."""
        try:
            return action()
        except DirectoryConnectionError as exc:
            message = f"{description} failed: directory connection error: {exc}"
        except DirectoryError as exc:
            message = f"{description} failed: {exc}"
        except Exception as exc:
            logger.exception("action_failed", action=description)
            message = f"{description} failed: {exc}"
        self.audit.error(message)
        return ActionStatus(ok=False, message=message)

    # region search and details
    def search(self, text: Optional[str]) -> ActionStatus:
        if not self.search_engine.is_searchable(text):
            return ActionStatus(
                ok=False,
                message=f"Enter at least {self.search_engine.min_length} characters to search.",
                payload=[],
            )

        def do() -> ActionStatus:
            result = self.search_engine.search(text)
            message = f"{len(result.refs)} object(s) found."
            if result.failed_buckets:
                message += f" Some object types could not be searched: {', '.join(result.failed_buckets)}."
            return ActionStatus(ok=True, message=message, payload=list(result.refs))

        return self.run_action(f"Search '{(text or '').strip()}'", do)

    def select(self, ref: DirectoryObjectRef) -> ActionStatus:
        self.selected = ref

        def do() -> ActionStatus:
            return ActionStatus(ok=True, message=f"Loaded {ref.display_name}.", payload=self.details(ref))

        return self.run_action(f"Load details for '{ref.display_name}'", do)

    def reload_details(self, ref: DirectoryObjectRef) -> ActionStatus:
        self.caches.invalidate_object(ref)
        return self.select(ref)

    def details(self, ref: DirectoryObjectRef) -> DetailsBundle:
        self.ensure_connected()
        return self.caches.details.get_or_compute(ref.cache_key, lambda: self._build_details(ref))

    def _build_details(self, ref: DirectoryObjectRef) -> DetailsBundle:
        header = f"{ref.kind.label}: {ref.display_name}"
        if ref.primary_email:
            header += f" <{ref.primary_email}>"

        if ref.kind is ObjectKind.SHARED_MAILBOX:
            rows = self.permissions.get_mailbox_access_state(ref.remote_identity)
            return MailboxDetails(ref=ref, header=header, permissions=tuple(rows))
        if ref.kind.is_resource:
            rows = self.permissions.get_mailbox_access_state(ref.remote_identity)
            calendar = self.calendar_permissions(ref)
            return ResourceMailboxDetails(
                ref=ref,
                header=header,
                permissions=tuple(rows),
                calendar_permissions=tuple(calendar),
            )
        if ref.kind.is_static_group:
            members = self.permissions.get_group_members(ref.remote_identity)
            return GroupDetails(ref=ref, header=f"{header} ({len(members)} members)", members=tuple(members))
        rule = self.permissions.get_dynamic_group_rule(ref.remote_identity)
        return DynamicGroupDetails(ref=ref, header=header, rule=rule)

    def calendar_permissions(self, ref: DirectoryObjectRef) -> List[CalendarPermissionRow]:
        mailbox = ref.primary_email or ref.remote_identity
        return self.caches.calendar.get_or_compute(
            calendar_key(ref),
            lambda: self.permissions.get_calendar_permissions(mailbox),
        )

    def clear_caches(self) -> ActionStatus:
        self.caches.clear()
        self.audit.info("Cleared search, details and calendar caches.")
        return ActionStatus(ok=True, message="All caches cleared.")

    # endregion

    # region mutations
    def add_members(self, group: DirectoryObjectRef, text: str) -> ActionStatus:
        return self._group_batch(group, text, "Add members", self.permissions.add_group_members)

    def remove_members(self, group: DirectoryObjectRef, text: str, selected: Iterable[str] = ()) -> ActionStatus:
        return self._group_batch(group, text, "Remove members", self.permissions.remove_group_members, selected)

    def _group_batch(
        self,
        group: DirectoryObjectRef,
        text: str,
        description: str,
        operation: Callable[[DirectoryObjectRef, Iterable[str]], BatchReport],
        selected: Iterable[str] = (),
    ) -> ActionStatus:
        if not group.kind.is_static_group:
            return ActionStatus(ok=False, message=f"{group.kind.label} membership cannot be edited.")
        identities = parse_identities(text) | _clean(selected)
        if not identities:
            return ActionStatus(ok=False, message=NO_VALID_IDENTITIES)
        return self._mutate(group, f"{description} on '{group.display_name}'", lambda: operation(group, identities))

    def grant_rights(
        self, mailbox: DirectoryObjectRef, text: str, full_access: bool, send_as: bool
    ) -> ActionStatus:
        if not mailbox.kind.is_mailbox:
            return ActionStatus(ok=False, message=f"{mailbox.kind.label} has no mailbox permissions.")
        if not (full_access or send_as):
            return ActionStatus(ok=False, message="Choose FullAccess, SendAs or both.")
        identities = parse_identities(text)
        if not identities:
            return ActionStatus(ok=False, message=NO_VALID_IDENTITIES)
        return self._mutate(
            mailbox,
            f"Grant rights on '{mailbox.display_name}'",
            lambda: self.permissions.grant_mailbox_rights(mailbox, identities, full_access, send_as),
        )

    def revoke_rights(
        self,
        mailbox: DirectoryObjectRef,
        text: str,
        full_access: bool,
        send_as: bool,
        selected_target_ids: Iterable[str] = (),
    ) -> ActionStatus:
        if not mailbox.kind.is_mailbox:
            return ActionStatus(ok=False, message=f"{mailbox.kind.label} has no mailbox permissions.")
        if not (full_access or send_as):
            return ActionStatus(ok=False, message="Choose FullAccess, SendAs or both.")
        # Target ids from permission rows were resolved once already and skip parsing.
        targets = parse_identities(text) | _clean(selected_target_ids)
        if not targets:
            return ActionStatus(ok=False, message=NO_VALID_IDENTITIES)
        return self._mutate(
            mailbox,
            f"Revoke rights on '{mailbox.display_name}'",
            lambda: self.permissions.revoke_mailbox_rights(mailbox, targets, full_access, send_as),
        )

    def _mutate(self, target: DirectoryObjectRef, description: str, batch: Callable[[], BatchReport]) -> ActionStatus:
        def do() -> ActionStatus:
            self.audit.info(f"{description}: started.")
            try:
                self.ensure_connected()
                report = batch()
            finally:
                self.caches.invalidate_object(target)
            self.audit.info(f"{description}: {report.summary()}")
            return ActionStatus(ok=report.failed == 0, message=report.summary(), payload=report)

        return self.run_action(description, do)

    # endregion


def _clean(values: Iterable[Any]) -> set:
    return {str(value).strip() for value in values or () if value and str(value).strip()}
