from .negotiator import NegotiationResult, PlaybackNegotiator, PlayMethod
from .reporter import PlaybackReporter
from .sessions import PlaybackSession, SessionRegistry, run_periodic_sweep

__all__ = [
    "NegotiationResult",
    "PlaybackNegotiator",
    "PlayMethod",
    "PlaybackReporter",
    "PlaybackSession",
    "SessionRegistry",
    "run_periodic_sweep",
]
