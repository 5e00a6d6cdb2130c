"""
Typed errors raised by marketplace operations.

Each carries the HTTP status the API answers with, so routes translate them
without a lookup table.
"""


class MarketplaceError(ValueError):
    status_code = 400


class InvalidBid(MarketplaceError):
    pass


class AuctionNotLive(MarketplaceError):
    pass


class SelfBid(MarketplaceError):
    pass


class BidderNotAllowed(MarketplaceError):
    status_code = 403


class NotAllowed(MarketplaceError):
    status_code = 403


class InvalidRequest(MarketplaceError):
    pass


class AuctionNotFound(MarketplaceError):
    status_code = 404


class ListingNotFound(MarketplaceError):
    status_code = 404


class PaymentNotFound(MarketplaceError):
    status_code = 404


class PaymentConflict(MarketplaceError):
    status_code = 409


class ConcurrencyConflict(MarketplaceError):
    """CAS retries exhausted; the caller may simply try again."""
    status_code = 409


class ProviderUnavailable(Exception):
    """The payment provider is unconfigured or its call failed."""
    status_code = 503
