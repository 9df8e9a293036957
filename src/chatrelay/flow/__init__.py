"""Chat-to-agent direction of the bridge."""

from chatrelay.flow.incoming import IncomingFlow

__all__ = ["IncomingFlow"]
