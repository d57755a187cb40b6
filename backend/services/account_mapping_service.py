"""Account mapping resolver - decides where each authorized account lands.

After a successful authorization every external account needs a local
home: either an existing local account (``associate``) or a new one
(``create``). The resolver proposes defaults, restricts which local
accounts may be chosen, and commits the user's final choices.
"""

import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum

from sqlalchemy.orm import Session

from integrations.aggregator_protocol import ExternalAccount
from integrations.exceptions import AggregatorError
from models import BankAccount, GocardlessConnection
from services.authorization_broker import PendingConnection
from services.balance_service import BalanceService
from services.bank_account_service import (
    AccountLinkConflictError,
    BankAccountService,
)
from services.connection_registrar import ConnectionRegistrar

logger = logging.getLogger(__name__)


class MappingAction(str, Enum):
    ASSOCIATE = "associate"
    CREATE = "create"


class MappingError(Exception):
    """A mapping choice is not allowed."""

    pass


@dataclass
class AccountMapping:
    external_account: ExternalAccount
    action: MappingAction
    local_account_id: str | None = None
    new_account_name: str | None = None


@dataclass
class MappingFailure:
    external_account_id: str
    error: str


@dataclass
class MappingCommitResult:
    linked_account_ids: list[str] = field(default_factory=list)
    failures: list[MappingFailure] = field(default_factory=list)
    connection: GocardlessConnection | None = None
    registration_error: str | None = None

    @property
    def success(self) -> bool:
        return not self.failures


def is_candidate(external_account: ExternalAccount, local_account: BankAccount) -> bool:
    """Unlinked accounts, or the one already linked to this external account."""
    return local_account.gocardless_account_id in (None, external_account.id)


class AccountMappingResolver:
    """Proposes, validates and commits external-to-local account mappings."""

    def __init__(self, balance_service: BalanceService, registrar: ConnectionRegistrar):
        self._balances = balance_service
        self._registrar = registrar

    @staticmethod
    def propose(
        external_accounts: list[ExternalAccount],
        local_accounts: list[BankAccount],
    ) -> list[AccountMapping]:
        """Default mapping per external account.

        A local account that already stores the external id means this is
        a reconnection, so the default is to associate with it. Anything
        else defaults to creating a new account named after the bank's.
        """
        by_external_id = {
            acct.gocardless_account_id: acct
            for acct in local_accounts
            if acct.gocardless_account_id
        }
        mappings = []
        for external in external_accounts:
            existing = by_external_id.get(external.id)
            if existing is not None:
                mappings.append(
                    AccountMapping(external, MappingAction.ASSOCIATE, local_account_id=existing.id)
                )
            else:
                mappings.append(
                    AccountMapping(external, MappingAction.CREATE, new_account_name=external.name)
                )
        return mappings

    @staticmethod
    def candidates_for(
        external_account: ExternalAccount,
        local_accounts: list[BankAccount],
    ) -> list[BankAccount]:
        """Local accounts the user may associate ``external_account`` with."""
        return [acct for acct in local_accounts if is_candidate(external_account, acct)]

    @staticmethod
    def override(
        mapping: AccountMapping,
        local_accounts: list[BankAccount],
        action: MappingAction,
        local_account_id: str | None = None,
        new_account_name: str | None = None,
    ) -> AccountMapping:
        """Return an edited copy of ``mapping``.

        Raises:
            MappingError: The associate target is missing or not a candidate.
        """
        if action == MappingAction.CREATE:
            return replace(
                mapping,
                action=action,
                local_account_id=None,
                new_account_name=new_account_name or mapping.external_account.name,
            )
        if not local_account_id:
            raise MappingError("Choose an account to associate with")
        allowed = {
            acct.id
            for acct in AccountMappingResolver.candidates_for(mapping.external_account, local_accounts)
        }
        if local_account_id not in allowed:
            raise MappingError(
                f"Account {local_account_id} cannot be linked to {mapping.external_account.id}"
            )
        return replace(mapping, action=action, local_account_id=local_account_id, new_account_name=None)

    def commit(
        self,
        db: Session,
        mappings: list[AccountMapping],
        pending_connection: PendingConnection | None = None,
    ) -> MappingCommitResult:
        """Apply mappings one by one, then register the connection.

        Each mapping is committed on its own, so a failure leaves the
        earlier ones in place and does not stop the later ones. Failed
        mappings are reported and left out of the linked ids. Registration
        runs only if something was linked and is best-effort.
        """
        result = MappingCommitResult()
        for mapping in mappings:
            external = mapping.external_account
            try:
                self._apply(db, mapping)
                db.commit()
            except (MappingError, AccountLinkConflictError) as exc:
                db.rollback()
                logger.warning("Mapping for %s rejected: %s", external.id, exc)
                result.failures.append(MappingFailure(external.id, str(exc)))
                continue
            except Exception as exc:
                db.rollback()
                logger.error("Mapping for %s failed", external.id, exc_info=True)
                result.failures.append(MappingFailure(external.id, f"Could not save account: {exc}"))
                continue
            result.linked_account_ids.append(external.id)

        if pending_connection is not None and result.linked_account_ids:
            connection, error = self._registrar.try_register(
                db,
                pending_connection.requisition_id,
                pending_connection.institution_id,
                result.linked_account_ids,
            )
            result.connection = connection
            result.registration_error = error

        logger.info(
            "Account mapping: %d linked, %d failed",
            len(result.linked_account_ids),
            len(result.failures),
        )
        return result

    def _fetch_balance(self, external_id: str) -> Decimal | None:
        try:
            return self._balances.fetch_current_balance(external_id)
        except AggregatorError as exc:
            logger.warning("Balance for %s unavailable during mapping: %s", external_id, exc)
            return None

    def _apply(self, db: Session, mapping: AccountMapping) -> BankAccount:
        external = mapping.external_account
        balance = self._fetch_balance(external.id)

        if mapping.action == MappingAction.ASSOCIATE:
            if not mapping.local_account_id:
                raise MappingError("Choose an account to associate with")
            account = BankAccountService.get_account(db, mapping.local_account_id)
            if account is None:
                raise MappingError(f"Bank account not found: {mapping.local_account_id}")
            if not is_candidate(external, account):
                raise MappingError(
                    f"Account {account.name} is already linked to another bank account"
                )
            # Keep the existing balance when the bank did not report one
            return BankAccountService.link(db, account, external.id, balance=balance)

        return BankAccountService.create_account(
            db,
            name=mapping.new_account_name or external.name,
            balance=balance if balance is not None else Decimal("0"),
            currency=external.currency,
            gocardless_account_id=external.id,
        )
