"""
Billing integration: webhook verification and tier-of-record updates.
"""

from .identity_client import IdentityProviderClient
from .webhook import BillingEventHandler, BillingOutcome

__all__ = [
    "BillingEventHandler",
    "BillingOutcome",
    "IdentityProviderClient",
]
