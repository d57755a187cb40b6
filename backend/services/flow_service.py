"""Flow service - backend half of the bank authorization flow.

``start_flow`` creates the end-user agreement and requisition whose link
the user is sent to. ``resolve_callback`` turns the bank's redirect back
into an :class:`AuthorizationMessage` for the broker.
"""

import logging
import uuid

from config import settings
from integrations.aggregator_protocol import AggregatorClient, ExternalAccount
from integrations.exceptions import AggregatorAPIError, AggregatorError
from services.authorization_broker import FlowStart
from services.message_channel import AuthorizationMessage

logger = logging.getLogger(__name__)


class FlowService:
    """Starts authorization flows and resolves their callbacks."""

    def __init__(self, client: AggregatorClient):
        self._client = client

    def start_flow(self, institution_id: str, redirect_url: str) -> FlowStart:
        """Create an agreement plus requisition and return the bank link.

        The agreement asks for as much history and access lifetime as both
        the institution and our settings allow. If the agreement cannot be
        created, the requisition falls back to the aggregator's default
        agreement (90 days of each).
        """
        agreement_id = None
        try:
            institution = self._client.get_institution(institution_id)
            max_historical_days = min(
                institution.transaction_total_days or settings.GOCARDLESS_MAX_HISTORICAL_DAYS,
                settings.GOCARDLESS_MAX_HISTORICAL_DAYS,
            )
            access_valid_for_days = min(
                institution.max_access_valid_for_days or settings.GOCARDLESS_ACCESS_VALID_FOR_DAYS,
                settings.GOCARDLESS_ACCESS_VALID_FOR_DAYS,
            )
            agreement = self._client.create_agreement(
                institution_id, max_historical_days, access_valid_for_days
            )
            agreement_id = agreement.id
        except AggregatorAPIError as exc:
            logger.warning(
                "Agreement for %s not created, using default terms: %s", institution_id, exc
            )

        reference = str(uuid.uuid4())
        requisition = self._client.create_requisition(
            institution_id=institution_id,
            redirect_url=redirect_url,
            reference=reference,
            agreement_id=agreement_id,
        )
        return FlowStart(
            auth_url=requisition.link,
            requisition_id=requisition.id,
            reference=requisition.reference or reference,
        )

    def resolve_callback(
        self,
        reference: str | None,
        origin: str,
        error: str | None = None,
    ) -> AuthorizationMessage:
        """Translate the bank redirect into a channel message.

        Args:
            reference: The requisition reference echoed back by the bank.
            origin: Origin the callback was served from; stamped on the
                message so the broker can verify it.
            error: Error code the bank put on the redirect, if any.
        """
        if error:
            logger.info("Authorization callback reported error %r", error)
            return AuthorizationMessage.failure(origin, "Authorization was cancelled or failed")
        if not reference:
            return AuthorizationMessage.failure(origin, "Missing requisition reference")

        try:
            requisition = self._client.find_requisition_by_reference(reference)
        except AggregatorError as exc:
            logger.warning("Requisition lookup for %s failed: %s", reference, exc)
            return AuthorizationMessage.failure(origin, "Could not verify the authorization")

        if requisition is None:
            return AuthorizationMessage.failure(origin, "Requisition not found")
        if not requisition.is_linked:
            logger.info(
                "Requisition %s not linked (status %s)", requisition.id, requisition.status
            )
            return AuthorizationMessage.failure(
                origin, f"Authorization not completed (status {requisition.status})"
            )

        accounts = [self.account_details(account_id) for account_id in requisition.accounts]
        logger.info(
            "Requisition %s linked with %d account(s)", requisition.id, len(accounts)
        )
        return AuthorizationMessage.success(origin, requisition.id, accounts)

    def account_details(self, account_id: str) -> ExternalAccount:
        """Account details, or placeholders when the aggregator has none."""
        try:
            return self._client.get_account_details(account_id)
        except AggregatorError as exc:
            logger.warning("Details for account %s unavailable: %s", account_id, exc)
            return ExternalAccount.placeholder(account_id)
