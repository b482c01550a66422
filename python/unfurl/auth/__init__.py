"""Authorization for link preview reads.

Provides:
- authorize_image_access: session + conversation membership gate
- AccessDecision / DenialReason: gate outcomes
"""

from unfurl.auth.image_access import AccessDecision, DenialReason, authorize_image_access

__all__ = ["AccessDecision", "DenialReason", "authorize_image_access"]
