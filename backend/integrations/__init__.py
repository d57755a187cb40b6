"""External API integrations.

This package contains:
- Aggregator protocol: normalized dataclasses for institutions, accounts,
  balances, transactions and requisitions
- GoCardless client: Bank Account Data API over httpx
- Typed aggregator exceptions
"""

from integrations.aggregator_protocol import (
    AggregatorBalance,
    AggregatorClient,
    AggregatorTransaction,
    Agreement,
    ExternalAccount,
    Institution,
    Requisition,
)
from integrations.gocardless_client import GocardlessClient, get_gocardless_client

__all__ = [
    "AggregatorBalance",
    "AggregatorClient",
    "AggregatorTransaction",
    "Agreement",
    "ExternalAccount",
    "GocardlessClient",
    "Institution",
    "Requisition",
    "get_gocardless_client",
]
