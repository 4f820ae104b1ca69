"""
Reverse geocoding package.

Turns coordinates into a human-readable address and city for display.
Not used by the ingestion merge logic.
"""

from services.registry.geocoding.service import ReverseGeocoder

__all__ = ["ReverseGeocoder"]
