from providers.base import BaseProvider, ProviderError
from providers.gemini import GeminiProvider
from providers.photoroom import PhotoRoomProvider
from providers.seedream import SeedDreamProvider

__all__ = [
    "BaseProvider",
    "GeminiProvider",
    "PhotoRoomProvider",
    "ProviderError",
    "SeedDreamProvider",
]
