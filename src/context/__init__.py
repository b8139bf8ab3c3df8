"""Context window management: compression, integrity checks, history pruning."""

from .extraction import ContextUnits, extract_units
from .tokens import estimate_message_tokens, estimate_messages_tokens, estimate_tokens, looks_like_code
from .window import BoundedContext, ContextWindowManager, IntegrityReport, TierAllocation

__all__ = [
    "BoundedContext",
    "ContextUnits",
    "ContextWindowManager",
    "IntegrityReport",
    "TierAllocation",
    "estimate_message_tokens",
    "estimate_messages_tokens",
    "estimate_tokens",
    "extract_units",
    "looks_like_code",
]
