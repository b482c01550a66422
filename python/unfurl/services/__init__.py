"""Service layer for unfurl.

Services hold the link preview domain logic. Route handlers stay
transport-only and call into these modules.
"""
