"""
Listing lookup.

WHAT: Read-only access to the listing terms a negotiation is opened against
WHY: Creation validates the initial offer against the listing's price bounds
HOW: A small protocol with an in-memory directory and an httpx-backed client
"""

from typing import Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from ..core.config import settings
from ..utils.exceptions import InternalError, ListingNotFoundError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ListingTerms(BaseModel):
    """The subset of a listing the negotiation engine needs."""
    listing_id: str
    owner_id: str
    title: str = ""
    description: str = ""
    base_price: float = Field(gt=0)
    min_price: Optional[float] = Field(default=None, ge=0)
    currency: str = Field(default_factory=lambda: settings.DEFAULT_CURRENCY, min_length=3, max_length=3)
    agent_assisted: bool = False


class ListingLookup(Protocol):
    """Anything that can resolve a listing id to its terms."""

    def get_listing(self, listing_id: str) -> ListingTerms:
        """Raises ListingNotFoundError for unknown listings."""
        ...


class InMemoryListingDirectory:
    """Process-local listing directory, used when no listing service is configured."""

    def __init__(self, listings: Optional[list[ListingTerms]] = None):
        self._listings: dict[str, ListingTerms] = {}
        for listing in listings or []:
            self.register(listing)

    def register(self, listing: ListingTerms) -> None:
        self._listings[listing.listing_id] = listing

    def get_listing(self, listing_id: str) -> ListingTerms:
        listing = self._listings.get(listing_id)
        if listing is None:
            raise ListingNotFoundError(listing_id)
        return listing


class HttpListingLookup:
    """
    Fetch listing terms from the marketplace listing service.

    Expects `GET {base_url}/listings/{id}` to return a JSON body shaped
    like `ListingTerms`.
    """

    def __init__(self, base_url: str, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def get_listing(self, listing_id: str) -> ListingTerms:
        url = f"{self.base_url}/listings/{listing_id}"
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.get(url)
        except httpx.HTTPError as e:
            logger.error(f"Listing service request failed for {listing_id}: {e}")
            raise InternalError("Listing service is unavailable") from e

        if response.status_code == 404:
            raise ListingNotFoundError(listing_id)
        if response.status_code != 200:
            logger.error(f"Listing service returned {response.status_code} for {listing_id}")
            raise InternalError("Listing service is unavailable")

        data = response.json()
        data.setdefault("listing_id", listing_id)
        return ListingTerms.model_validate(data)


_listing_lookup: Optional[ListingLookup] = None


def get_listing_lookup() -> ListingLookup:
    """Singleton lookup: HTTP when LISTING_SERVICE_URL is set, in-memory otherwise."""
    global _listing_lookup

    if _listing_lookup is None:
        if settings.LISTING_SERVICE_URL:
            logger.info(f"Using listing service at {settings.LISTING_SERVICE_URL}")
            _listing_lookup = HttpListingLookup(
                settings.LISTING_SERVICE_URL,
                timeout=settings.LISTING_SERVICE_TIMEOUT,
            )
        else:
            logger.info("Using in-memory listing directory")
            _listing_lookup = InMemoryListingDirectory()

    return _listing_lookup


def reset_listing_lookup() -> None:
    """Reset the singleton (for tests)."""
    global _listing_lookup
    _listing_lookup = None
