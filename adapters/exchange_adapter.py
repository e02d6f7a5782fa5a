from __future__ import annotations

import json
import subprocess
import threading
import uuid
from typing import Any, List, Optional

import structlog

from directory.models import DirectoryConnectionError, DirectoryError, RemoteCallError

from .base import DirectoryAdapter, Record

logger = structlog.get_logger(__name__)

RECIPIENT_PROPERTIES = (
    "Name,DisplayName,Alias,PrimarySmtpAddress,Identity,Guid,ExternalDirectoryObjectId,"
    "RecipientType,@{n='RecipientTypeDetails';e={\"$($_.RecipientTypeDetails)\"}}"
)
GROUP_PROPERTIES = RECIPIENT_PROPERTIES + ",@{n='GroupType';e={\"$($_.GroupType)\"}}"


def ps_quote(value: Any) -> str:
    """Render a value as a single-quoted PowerShell literal."""
    return "'" + str(value).replace("'", "''") + "'"


def opath_value(value: str) -> str:
    return str(value).replace("'", "''")


def search_filter(text: str) -> str:
    needle = opath_value(text)
    return (
        f"DisplayName -like '*{needle}*' -or PrimarySmtpAddress -like '*{needle}*' "
        f"-or Alias -like '*{needle}*'"
    )


def build_mailbox_search(recipient_type_details: str, text: str, limit: int) -> str:
    return (
        f"Get-EXOMailbox -RecipientTypeDetails {ps_quote(recipient_type_details)} "
        f"-Filter {ps_quote(search_filter(text))} -ResultSize {int(limit)} -ErrorAction Stop "
        f"| Select-Object {RECIPIENT_PROPERTIES}"
    )


def build_group_search(text: str, limit: int) -> str:
    return (
        f"Get-DistributionGroup -Filter {ps_quote(search_filter(text))} -ResultSize {int(limit)} -ErrorAction Stop "
        f"| Select-Object {GROUP_PROPERTIES}"
    )


def build_dynamic_group_search(text: str, limit: int) -> str:
    return (
        f"Get-DynamicDistributionGroup -Filter {ps_quote(search_filter(text))} -ResultSize {int(limit)} -ErrorAction Stop "
        f"| Select-Object {RECIPIENT_PROPERTIES}"
    )


def folder_identity(mailbox: str, folder_path: str) -> str:
    path = (folder_path or "").replace("/", "\\")
    if not path.startswith("\\"):
        path = "\\" + path
    return f"{mailbox}:{path}"


def wrap_command(command: str, marker: str) -> str:
    """Wrap a cmdlet so it always prints exactly one marker-prefixed JSON envelope."""
    return (
        "try { $__r = @(" + command + "); "
        "$__o = @{ ok = $true; data = $__r } } "
        "catch { $__o = @{ ok = $false; error = $_.Exception.Message } }; "
        "Write-Output ('" + marker + "' + ($__o | ConvertTo-Json -Depth 6 -Compress))"
    )


def parse_envelope(line: str, marker: str) -> List[Record]:
    payload = line.split(marker, 1)[1].strip()
    try:
        envelope = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise RemoteCallError(f"Unreadable response from PowerShell: {exc}") from exc
    if not envelope.get("ok"):
        raise RemoteCallError(str(envelope.get("error") or "Remote command failed."))
    data = envelope.get("data")
    if data is None:
        return []
    if isinstance(data, dict):
        return [data]
    return [item for item in data if isinstance(item, dict)]


class PowerShellSession:
    """Long-lived PowerShell process that cmdlets are written to over stdin."""

    def __init__(self, executable: str = "pwsh") -> None:
        self._executable = executable
        self._proc: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()

    @property
    def alive(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def start(self) -> None:
        if self.alive:
            return
        command = [self._executable, "-NoLogo", "-NoProfile", "-NonInteractive", "-Command", "-"]
        try:
            self._proc = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            raise DirectoryConnectionError(f"Could not start {self._executable}: {exc}") from exc
        self._write("[Console]::OutputEncoding = [System.Text.Encoding]::UTF8")
        self._write("$ProgressPreference = 'SilentlyContinue'")

    def _write(self, text: str) -> None:
        if not self.alive or self._proc is None or self._proc.stdin is None:
            raise DirectoryConnectionError("PowerShell session is not running.")
        try:
            self._proc.stdin.write(text + "\n")
            self._proc.stdin.flush()
        except (BrokenPipeError, OSError) as exc:
            raise DirectoryConnectionError(f"PowerShell session closed: {exc}") from exc

    def run(self, command: str) -> List[Record]:
        marker = f"###{uuid.uuid4().hex}###"
        with self._lock:
            self._write(wrap_command(command, marker))
            assert self._proc is not None and self._proc.stdout is not None
            while True:
                line = self._proc.stdout.readline()
                if not line:
                    raise DirectoryConnectionError("PowerShell session ended unexpectedly.")
                if marker in line:
                    return parse_envelope(line, marker)
                # Warnings and host output from cmdlets end up here.
                logger.debug("powershell_output", line=line.rstrip())

    def stop(self) -> None:
        if self._proc is None:
            return
        try:
            if self.alive:
                self._write("exit")
            self._proc.wait(timeout=10)
        except (DirectoryConnectionError, subprocess.TimeoutExpired):
            self._proc.kill()
        self._proc = None


class ExchangeAdapter(DirectoryAdapter):
    """Exchange Online directory reached through the ExchangeOnlineManagement module."""

    def __init__(
        self,
        organization: Optional[str] = None,
        app_id: Optional[str] = None,
        certificate_thumbprint: Optional[str] = None,
        user_principal_name: Optional[str] = None,
        executable: str = "pwsh",
        shell: Optional[PowerShellSession] = None,
    ) -> None:
        self._organization = organization
        self._app_id = app_id
        self._certificate_thumbprint = certificate_thumbprint
        self._user_principal_name = user_principal_name
        self._shell = shell or PowerShellSession(executable)
        self._connected = False
        self._connect_lock = threading.Lock()

    def connect_command(self) -> str:
        parts = ["Import-Module ExchangeOnlineManagement -ErrorAction Stop;", "Connect-ExchangeOnline -ShowBanner:$false"]
        if self._app_id and self._certificate_thumbprint and self._organization:
            parts += [
                f"-AppId {ps_quote(self._app_id)}",
                f"-CertificateThumbprint {ps_quote(self._certificate_thumbprint)}",
                f"-Organization {ps_quote(self._organization)}",
            ]
        elif self._user_principal_name:
            parts.append(f"-UserPrincipalName {ps_quote(self._user_principal_name)}")
        parts.append("-ErrorAction Stop")
        return " ".join(parts)

    def connect(self) -> None:
        with self._connect_lock:
            if self.is_connected():
                return
            self._shell.start()
            try:
                self._shell.run(self.connect_command())
            except RemoteCallError as exc:
                raise DirectoryConnectionError(f"Connect-ExchangeOnline failed: {exc}") from exc
            self._connected = True
        logger.info("exchange_connected", organization=self._organization, upn=self._user_principal_name)

    def is_connected(self) -> bool:
        return self._connected and self._shell.alive

    def close(self) -> None:
        if self.is_connected():
            try:
                self._shell.run("Disconnect-ExchangeOnline -Confirm:$false")
            except DirectoryError:
                logger.warning("exchange_disconnect_failed")
        self._shell.stop()
        self._connected = False

    def _run(self, command: str) -> List[Record]:
        if not self.is_connected():
            self._connected = False
            raise DirectoryConnectionError("Exchange Online session is not connected.")
        return self._shell.run(command)

    def _run_one(self, command: str) -> Record:
        records = self._run(command)
        if not records:
            raise RemoteCallError("Object not found.")
        if len(records) > 1:
            raise RemoteCallError("Identity is ambiguous.")
        return records[0]

    def get_recipient(self, identity: str) -> Record:
        return self._run_one(
            f"Get-EXORecipient -Identity {ps_quote(identity)} -ErrorAction Stop | Select-Object {RECIPIENT_PROPERTIES}"
        )

    def search_mailboxes(self, recipient_type_details: str, text: str, limit: int) -> List[Record]:
        return self._run(build_mailbox_search(recipient_type_details, text, limit))

    def search_groups(self, text: str, limit: int) -> List[Record]:
        return self._run(build_group_search(text, limit))

    def search_dynamic_groups(self, text: str, limit: int) -> List[Record]:
        return self._run(build_dynamic_group_search(text, limit))

    def get_dynamic_group(self, identity: str) -> Record:
        return self._run_one(
            f"Get-DynamicDistributionGroup -Identity {ps_quote(identity)} -ErrorAction Stop "
            f"| Select-Object Name,DisplayName,PrimarySmtpAddress,RecipientFilter,RecipientContainer"
        )

    def list_mailbox_permissions(self, mailbox: str) -> List[Record]:
        return self._run(
            f"Get-EXOMailboxPermission -Identity {ps_quote(mailbox)} -ErrorAction Stop "
            "| Select-Object User,IsInherited,Deny,@{n='AccessRights';e={$_.AccessRights -join ','}}"
        )

    def add_mailbox_permission(self, mailbox: str, user: str, auto_mapping: bool = True) -> None:
        mapping = "$true" if auto_mapping else "$false"
        self._run(
            f"Add-MailboxPermission -Identity {ps_quote(mailbox)} -User {ps_quote(user)} "
            f"-AccessRights FullAccess -InheritanceType All -AutoMapping:{mapping} -Confirm:$false -ErrorAction Stop "
            "| Out-Null"
        )

    def remove_mailbox_permission(self, mailbox: str, user: str) -> None:
        self._run(
            f"Remove-MailboxPermission -Identity {ps_quote(mailbox)} -User {ps_quote(user)} "
            "-AccessRights FullAccess -InheritanceType All -Confirm:$false -ErrorAction Stop"
        )

    def list_recipient_permissions(self, mailbox: str) -> List[Record]:
        return self._run(
            f"Get-EXORecipientPermission -Identity {ps_quote(mailbox)} -ErrorAction Stop "
            "| Select-Object Trustee,@{n='AccessRights';e={$_.AccessRights -join ','}},"
            "@{n='Deny';e={$_.AccessControlType -eq 'Deny'}}"
        )

    def add_recipient_permission(self, mailbox: str, trustee: str) -> None:
        self._run(
            f"Add-RecipientPermission -Identity {ps_quote(mailbox)} -Trustee {ps_quote(trustee)} "
            "-AccessRights SendAs -Confirm:$false -ErrorAction Stop | Out-Null"
        )

    def remove_recipient_permission(self, mailbox: str, trustee: str) -> None:
        self._run(
            f"Remove-RecipientPermission -Identity {ps_quote(mailbox)} -Trustee {ps_quote(trustee)} "
            "-AccessRights SendAs -Confirm:$false -ErrorAction Stop"
        )

    def list_calendar_folders(self, mailbox: str) -> List[Record]:
        return self._run(
            f"Get-EXOMailboxFolderStatistics -Identity {ps_quote(mailbox)} -FolderScope Calendar -ErrorAction Stop "
            "| Select-Object Name,FolderPath,@{n='FolderType';e={\"$($_.FolderType)\"}}"
        )

    def list_folder_permissions(self, mailbox: str, folder_path: str) -> List[Record]:
        return self._run(
            f"Get-EXOMailboxFolderPermission -Identity {ps_quote(folder_identity(mailbox, folder_path))} "
            "-ErrorAction Stop | Select-Object @{n='User';e={\"$($_.User)\"}},"
            "@{n='AccessRights';e={$_.AccessRights -join ','}},"
            "@{n='SharingPermissionFlags';e={\"$($_.SharingPermissionFlags)\"}}"
        )

    def list_group_members(self, group: str) -> List[Record]:
        return self._run(
            f"Get-DistributionGroupMember -Identity {ps_quote(group)} -ResultSize Unlimited -ErrorAction Stop "
            f"| Select-Object {RECIPIENT_PROPERTIES}"
        )

    def add_group_member(self, group: str, member: str) -> None:
        self._run(
            f"Add-DistributionGroupMember -Identity {ps_quote(group)} -Member {ps_quote(member)} "
            "-BypassSecurityGroupManagerCheck -Confirm:$false -ErrorAction Stop"
        )

    def remove_group_member(self, group: str, member: str) -> None:
        self._run(
            f"Remove-DistributionGroupMember -Identity {ps_quote(group)} -Member {ps_quote(member)} "
            "-BypassSecurityGroupManagerCheck -Confirm:$false -ErrorAction Stop"
        )
