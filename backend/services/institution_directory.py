"""Institution directory - cached bank list with local search."""

import logging
import threading
import time

from config import settings
from integrations.aggregator_protocol import AggregatorClient, Institution
from integrations.exceptions import AggregatorError

logger = logging.getLogger(__name__)

# GoCardless test bank; works with sandbox credentials in any country
SANDBOX_INSTITUTION = Institution(
    id="SANDBOXFINANCE_SFIN0000",
    name="Sandbox Finance",
    bic="SFIN0000",
    transaction_total_days=90,
    logo="https://cdn.gocardless.com/institutions/SANDBOXFINANCE_SFIN0000.png",
    countries=("GB",),
)


class InstitutionDirectoryError(Exception):
    """Loading the institution list failed.

    Always retryable, and distinct from "no institutions match": callers
    show a "try again" message for this and an empty state for ``[]``.
    """

    retriable = True

    def __init__(self, message: str, country: str):
        self.country = country
        super().__init__(message)


class InstitutionDirectory:
    """Loads institutions once per country and filters them locally.

    Search never goes back to the aggregator; typing in a search box only
    filters the list that is already in memory.
    """

    def __init__(
        self,
        client: AggregatorClient,
        ttl_seconds: float | None = None,
        clock=time.monotonic,
        include_sandbox: bool | None = None,
    ):
        self._client = client
        self._ttl = settings.INSTITUTION_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._include_sandbox = (
            settings.GOCARDLESS_SANDBOX if include_sandbox is None else include_sandbox
        )
        self._clock = clock
        self._cache: dict[str, tuple[float, list[Institution]]] = {}
        self._lock = threading.Lock()

    def load(self, country: str | None = None) -> list[Institution]:
        """Return all institutions for a country, fetching on first use.

        Args:
            country: ISO 3166 alpha-2 code; defaults to the configured country.

        Raises:
            InstitutionDirectoryError: The aggregator could not be reached or
                rejected the request.
        """
        country = (country or settings.GOCARDLESS_DEFAULT_COUNTRY).upper()
        with self._lock:
            cached = self._cache.get(country)
            if cached is not None and self._clock() - cached[0] < self._ttl:
                return cached[1]

        try:
            institutions = self._client.list_institutions(country)
        except AggregatorError as exc:
            logger.warning("Institution list for %s unavailable: %s", country, exc)
            raise InstitutionDirectoryError(
                f"Could not load banks for {country}. Please try again.", country
            ) from exc

        if self._include_sandbox and all(i.id != SANDBOX_INSTITUTION.id for i in institutions):
            institutions = [*institutions, SANDBOX_INSTITUTION]
        institutions = sorted(institutions, key=lambda i: i.name.casefold())
        with self._lock:
            self._cache[country] = (self._clock(), institutions)
        logger.info("Institution directory loaded %d banks for %s", len(institutions), country)
        return institutions

    def search(self, term: str, country: str | None = None) -> list[Institution]:
        """Case-insensitive substring match on name or BIC.

        A blank term returns the full list.
        """
        institutions = self.load(country)
        needle = (term or "").strip().casefold()
        if not needle:
            return list(institutions)
        return [
            inst
            for inst in institutions
            if needle in inst.name.casefold() or needle in inst.bic.casefold()
        ]

    def get(self, institution_id: str, country: str | None = None) -> Institution | None:
        """Look up an institution in the cached list without a network call."""
        for inst in self.load(country):
            if inst.id == institution_id:
                return inst
        return None

    def refresh(self, country: str | None = None) -> None:
        """Drop the cache for one country, or for all of them."""
        with self._lock:
            if country is None:
                self._cache.clear()
            else:
                self._cache.pop(country.upper(), None)
