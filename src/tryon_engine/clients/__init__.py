"""
Client adapters for the try-on provider, quality scoring and background removal services.
"""
from .background import BackgroundRemovalClient
from .provider import TryOnProviderClient
from .scoring import QualityScoringClient

__all__ = ["BackgroundRemovalClient", "QualityScoringClient", "TryOnProviderClient"]
