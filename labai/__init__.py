from .config import FallbackSettings
from .fallback import FallbackReply, FallbackResolver, OpenAISynthesizer, default_resolver

__all__ = [
    "FallbackSettings",
    "FallbackReply",
    "FallbackResolver",
    "OpenAISynthesizer",
    "default_resolver",
]
