from .client import StripeCheckoutClient, StripeCheckoutError

__all__ = ["StripeCheckoutClient", "StripeCheckoutError"]
