"""Pydantic schemas mirroring payloads exchanged with the Password Safe API."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


class ApiModel(BaseModel):
    """Base model for Password Safe payloads (PascalCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


def _as_text(value: Any) -> Any:
    # The API is inconsistent about numeric vs string identifiers.
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    return value


class ManagedAccount(ApiModel):
    """A vaulted credential identity tied to a managed system."""

    managed_account_id: int = Field(
        default=0, validation_alias=AliasChoices("ManagedAccountID", "ManagedAccountId")
    )
    account_id: int = Field(default=0, validation_alias=AliasChoices("AccountId", "AccountID"))
    managed_system_id: int = Field(
        default=0, validation_alias=AliasChoices("ManagedSystemID", "ManagedSystemId")
    )
    system_id: int = Field(default=0, validation_alias=AliasChoices("SystemId", "SystemID"))
    domain_name: str | None = Field(default=None, alias="DomainName")
    account_name: str | None = Field(default=None, alias="AccountName")
    distinguished_name: str | None = Field(default=None, alias="DistinguishedName")
    password_fallback_flag: bool = Field(default=False, alias="PasswordFallbackFlag")
    user_principal_name: str | None = Field(default=None, alias="UserPrincipalName")
    sam_account_name: str | None = Field(default=None, alias="SAMAccountName")
    login_account_flag: bool = Field(default=False, alias="LoginAccountFlag")
    description: str | None = Field(default=None, alias="Description")
    api_enabled: bool = Field(default=False, alias="ApiEnabled")
    release_duration: int = Field(default=0, alias="ReleaseDuration")
    max_release_duration: int = Field(default=0, alias="MaxReleaseDuration")
    last_change_date: datetime | None = Field(default=None, alias="LastChangeDate")
    next_change_date: datetime | None = Field(default=None, alias="NextChangeDate")
    is_changing: bool = Field(default=False, alias="IsChanging")

    @model_validator(mode="after")
    def _reconcile_legacy_ids(self) -> ManagedAccount:
        if self.account_id > 0 and self.managed_account_id == 0:
            self.managed_account_id = self.account_id
        if self.system_id > 0 and self.managed_system_id == 0:
            self.managed_system_id = self.system_id
        return self


class ManagedSystem(ApiModel):
    """A target host or platform whose credentials are vaulted."""

    managed_system_id: int = Field(
        default=0, validation_alias=AliasChoices("ManagedSystemID", "ManagedSystemId")
    )
    asset_id: int | None = Field(default=None, alias="AssetID")
    database_id: int | None = Field(default=None, alias="DatabaseID")
    system_name: str | None = Field(default=None, alias="SystemName")
    display_name: str | None = Field(default=None, alias="DisplayName")
    domain_name: str | None = Field(default=None, alias="DomainName")
    description: str | None = Field(default=None, alias="Description")
    port: int | None = Field(default=None, alias="Port")
    enabled: bool = Field(default=False, alias="Enabled")
    last_change_date: datetime | None = Field(default=None, alias="LastChangeDate")
    next_change_date: datetime | None = Field(default=None, alias="NextChangeDate")
    platform_id: int | None = Field(default=None, alias="PlatformID")
    platform_name: str | None = Field(default=None, alias="PlatformName")
    net_bios_name: str | None = Field(default=None, alias="NetBiosName")
    ip_address: str | None = Field(default=None, alias="IPAddress")
    dns_name: str | None = Field(default=None, alias="DNSName")
    instance_name: str | None = Field(default=None, alias="InstanceName")
    is_directory: bool = Field(default=False, alias="IsDirectory")


class PasswordRequest(ApiModel):
    """Body of ``POST Requests`` asking for a credential disclosure."""

    access_type: str = Field(default="View", alias="AccessType")
    system_id: int = Field(alias="SystemID")
    account_id: int = Field(alias="AccountID")
    application_id: int | None = Field(default=None, alias="ApplicationID")
    duration_minutes: int = Field(alias="DurationMinutes", ge=1)
    reason: str | None = Field(default=None, alias="Reason")
    access_policy_schedule_id: int | None = Field(default=None, alias="AccessPolicyScheduleID")
    conflict_option: str | None = Field(default=None, alias="ConflictOption")
    ticket_system_id: int | None = Field(default=None, alias="TicketSystemID")
    ticket_number: str | None = Field(default=None, alias="TicketNumber")
    rotate_on_checkin: bool = Field(default=True, alias="RotateOnCheckin")

    def to_payload(self) -> dict[str, Any]:
        """Serialize using the API's field names, omitting unset optionals."""

        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class PasswordRequestResult(ApiModel):
    """Server-side state of a disclosure request."""

    request_id: str | None = Field(
        default=None, validation_alias=AliasChoices("RequestID", "RequestId")
    )
    status: str | None = Field(default=None, alias="Status")
    created_date: datetime | None = Field(default=None, alias="CreatedDate")
    expiration_date: datetime | None = Field(default=None, alias="ExpirationDate")
    system_id: int = Field(default=0, validation_alias=AliasChoices("SystemID", "SystemId"))
    account_id: int = Field(default=0, validation_alias=AliasChoices("AccountID", "AccountId"))
    requester_id: int | None = Field(default=None, alias="RequesterID")
    approver_id: int | None = Field(default=None, alias="ApproverID")
    requester_name: str | None = Field(default=None, alias="RequesterName")
    approver_name: str | None = Field(default=None, alias="ApproverName")
    access_type: str | None = Field(default=None, alias="AccessType")

    @field_validator("request_id", mode="before")
    @classmethod
    def _coerce_request_id(cls, value: Any) -> Any:
        return _as_text(value)


class ActiveRequest(ApiModel):
    """Minimal view of an entry in ``GET Requests?status=active``."""

    request_id: str | None = Field(
        default=None, validation_alias=AliasChoices("RequestID", "RequestId")
    )
    account_id: str | None = Field(
        default=None, validation_alias=AliasChoices("AccountID", "AccountId")
    )
    system_id: int | None = Field(
        default=None, validation_alias=AliasChoices("SystemID", "SystemId")
    )
    status: str | None = Field(default=None, alias="Status")
    approved_date: datetime | None = Field(default=None, alias="ApprovedDate")
    expires_date: datetime | None = Field(default=None, alias="ExpiresDate")

    @field_validator("request_id", "account_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> Any:
        return _as_text(value)


class ManagedPassword(ApiModel):
    """A disclosed credential. Transient: never persist instances of this model."""

    password: str | None = Field(default=None, alias="Password", repr=False)
    dss_key: str | None = Field(default=None, alias="DSSKey", repr=False)
    request_id: str | None = Field(
        default=None, validation_alias=AliasChoices("RequestID", "RequestId")
    )
    account_id: int = Field(default=0, validation_alias=AliasChoices("AccountID", "AccountId"))
    system_id: int = Field(default=0, validation_alias=AliasChoices("SystemID", "SystemId"))
    expiration_date: datetime | None = Field(default=None, alias="ExpirationDate")

    @field_validator("request_id", mode="before")
    @classmethod
    def _coerce_request_id(cls, value: Any) -> Any:
        return _as_text(value)


class CredentialTestResult(ApiModel):
    """Envelope returned by ``ManagedAccounts/{id}/Credentials/Test``."""

    success: bool = Field(default=False, alias="Success")


class SecretOwner(ApiModel):
    owner_id: int | None = Field(default=None, alias="OwnerId")
    owner: str | None = Field(default=None, alias="Owner")
    email: str | None = Field(default=None, alias="Email")
    group_id: int | None = Field(default=None, alias="GroupId")
    user_id: int | None = Field(default=None, alias="UserId")
    name: str | None = Field(default=None, alias="Name")


class SecretUrl(ApiModel):
    id: UUID | None = Field(default=None, alias="Id")
    credential_id: UUID | None = Field(default=None, alias="CredentialId")
    url: str | None = Field(default=None, alias="Url")


class Secret(ApiModel):
    """A Secrets-Safe vault entry."""

    id: UUID | None = Field(default=None, alias="Id")
    title: str | None = Field(default=None, alias="Title")
    description: str | None = Field(default=None, alias="Description")
    username: str | None = Field(default=None, alias="Username")
    password: str | None = Field(default=None, alias="Password", repr=False)
    file_name: str | None = Field(default=None, alias="FileName")
    file_hash: str | None = Field(default=None, alias="FileHash")
    text: str | None = Field(default=None, alias="Text", repr=False)
    secret_type: str | None = Field(default=None, alias="SecretType")
    owner_id: int | None = Field(default=None, alias="OwnerId")
    folder_id: UUID | None = Field(default=None, alias="FolderId")
    created_on: datetime | None = Field(default=None, alias="CreatedOn")
    created_by: str | None = Field(default=None, alias="CreatedBy")
    modified_on: datetime | None = Field(default=None, alias="ModifiedOn")
    modified_by: str | None = Field(default=None, alias="ModifiedBy")
    owner: str | None = Field(default=None, alias="Owner")
    folder: str | None = Field(default=None, alias="Folder")
    folder_path: str | None = Field(default=None, alias="FolderPath")
    owners: list[SecretOwner] = Field(default_factory=list, alias="Owners")
    owner_type: str | None = Field(default=None, alias="OwnerType")
    notes: str | None = Field(default=None, alias="Notes")
    urls: list[SecretUrl] = Field(default_factory=list, alias="Urls")

    @field_validator("owners", "urls", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value


__all__ = [
    "ActiveRequest",
    "ApiModel",
    "CredentialTestResult",
    "ManagedAccount",
    "ManagedPassword",
    "ManagedSystem",
    "PasswordRequest",
    "PasswordRequestResult",
    "Secret",
    "SecretOwner",
    "SecretUrl",
]
