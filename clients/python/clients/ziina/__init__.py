from .client import ZiinaClient, DEFAULT_API_URL, verify_signature
from .exceptions import ZiinaAPIError, ZiinaClientError, ZiinaNotConfiguredError

__all__ = [
    "ZiinaClient",
    "DEFAULT_API_URL",
    "verify_signature",
    "ZiinaClientError",
    "ZiinaNotConfiguredError",
    "ZiinaAPIError",
]
