"""Pydantic schemas for the GoCardless connection and import endpoints.

Field names go over the wire in camelCase (``authUrl``, ``requisitionId``)
to match what the frontend sends and expects; Python code uses snake_case.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base schema serialized with camelCase aliases."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ------------------------------------------------------------------
# Institutions and flow start
# ------------------------------------------------------------------


class InstitutionResponse(CamelModel):
    id: str
    name: str
    bic: str = ""
    transaction_total_days: int
    logo: str = ""
    countries: list[str] = []


class FlowStartRequest(CamelModel):
    institution_id: str
    redirect_url: Optional[str] = None


class FlowStartResponse(CamelModel):
    auth_url: str
    requisition_id: str
    reference: str


class RequisitionResponse(CamelModel):
    id: str
    status: str
    institution_id: str
    reference: str = ""
    agreement_id: Optional[str] = None
    link: str = ""
    accounts: list[str] = []


class ExternalAccountResponse(CamelModel):
    id: str
    iban: str = ""
    name: str = ""
    currency: str = "EUR"


class BalanceAmount(CamelModel):
    amount: Decimal
    currency: str


class BalanceEntry(CamelModel):
    balance_type: str
    balance_amount: BalanceAmount


class BalancesResponse(CamelModel):
    balances: list[BalanceEntry]


# ------------------------------------------------------------------
# Connections and expiration
# ------------------------------------------------------------------


class ConnectionCompleteRequest(CamelModel):
    requisition_id: str
    institution_id: str
    linked_account_ids: list[str] = Field(min_length=1)


class ConnectionResponse(CamelModel):
    id: str
    requisition_id: str
    institution_id: str
    institution_name: Optional[str] = None
    institution_logo: Optional[str] = None
    status: str
    connected_at: datetime
    expires_at: datetime
    access_valid_for_days: int
    last_sync_at: Optional[datetime] = None
    last_sync_error: Optional[str] = None
    linked_account_ids: list[str] = []


class ConnectionAlertResponse(CamelModel):
    connection_id: str
    institution_id: str
    institution_name: str
    institution_logo: Optional[str] = None
    status: str
    expires_at: datetime
    days_until_expiration: int
    message: str
    linked_account_ids: list[str] = []


class ConnectionStatusResponse(CamelModel):
    total_connections: int
    active_connections: int
    expiring_soon_connections: int
    expired_connections: int
    error_connections: int
    alerts: list[ConnectionAlertResponse]


# ------------------------------------------------------------------
# Import
# ------------------------------------------------------------------


class ImportRequest(CamelModel):
    skip_duplicate_check: bool = False
    create_pending_for_duplicates: bool = False
    date_from: Optional[date] = None
    date_to: Optional[date] = None

    @model_validator(mode="after")
    def validate_window(self):
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("dateFrom must not be after dateTo")
        return self


class ImportSingleRequest(ImportRequest):
    account_id: str  # GoCardless account id
    bank_account_id: Optional[str] = None


class AccountImportResultResponse(CamelModel):
    bank_account_id: str
    gocardless_account_id: str
    account_name: str
    success: bool
    new_transactions: int
    duplicates: int
    pending_duplicates: int
    balance_synchronized: bool
    error: Optional[str] = None
    balance_error: Optional[str] = None


class ImportSummaryResponse(CamelModel):
    total_accounts: int
    successful_accounts: int
    failed_accounts: int
    total_new_transactions: int
    total_duplicates: int
    total_pending_duplicates: int
    balances_synchronized: int


class ImportResponse(CamelModel):
    summary: ImportSummaryResponse
    account_results: list[AccountImportResultResponse]
    logs: list[str]
    messages: list[str]


class BalanceSyncResultResponse(CamelModel):
    bank_account_id: str
    account_name: str
    success: bool
    balance: Optional[Decimal] = None
    error: Optional[str] = None


class BalanceSyncResponse(CamelModel):
    total_accounts: int
    synchronized: int
    failed: int
    results: list[BalanceSyncResultResponse]


# ------------------------------------------------------------------
# Authorization sessions and account mapping
# ------------------------------------------------------------------


class AuthorizationCreateRequest(CamelModel):
    institution_id: str


class BankAccountOption(CamelModel):
    id: str
    name: str
    currency: str
    gocardless_account_id: Optional[str] = None


class MappingProposalResponse(CamelModel):
    external_account: ExternalAccountResponse
    action: str
    local_account_id: Optional[str] = None
    new_account_name: Optional[str] = None
    candidates: list[BankAccountOption] = []


class AuthorizationSessionResponse(CamelModel):
    session_id: str
    institution_id: str
    state: str
    auth_url: str
    requisition_id: str
    error: Optional[str] = None
    accounts: list[ExternalAccountResponse] = []
    proposed_mappings: list[MappingProposalResponse] = []
    mappings_committed: bool = False


class MappingChoice(CamelModel):
    external_account_id: str
    action: str = Field(pattern="^(associate|create)$")
    local_account_id: Optional[str] = None
    new_account_name: Optional[str] = None


class CommitMappingsRequest(CamelModel):
    mappings: list[MappingChoice] = Field(min_length=1)


class MappingFailureResponse(CamelModel):
    external_account_id: str
    error: str


class CommitMappingsResponse(CamelModel):
    linked_account_ids: list[str]
    failures: list[MappingFailureResponse]
    connection: Optional[ConnectionResponse] = None
    registration_error: Optional[str] = None


# ------------------------------------------------------------------
# Pending duplicates
# ------------------------------------------------------------------


class PendingDuplicateResponse(CamelModel):
    id: str
    bank_account_id: str
    existing_transaction_id: Optional[str] = None
    external_id: Optional[str] = None
    booking_date: date
    amount: Decimal
    currency: str
    description: Optional[str] = None
    resolved: bool
    resolution: Optional[str] = None
    created_at: Optional[datetime] = None


class ResolvePendingDuplicateRequest(CamelModel):
    action: str = Field(pattern="^(keep_existing|import)$")
