"""
Whisper Transport Module

Link-layer abstraction: directly linked neighbours and raw frames.

Implementations:
- LoopbackTransport: in-process virtual medium for tests and simulation
"""

from .base import (
    Transport,
    TransportError,
    FrameReceiver,
    DEFAULT_SEND_TIMEOUT,
)

from .loopback import (
    LoopbackConfig,
    LoopbackMedium,
    LoopbackTransport,
)

__all__ = [
    'Transport',
    'TransportError',
    'FrameReceiver',
    'DEFAULT_SEND_TIMEOUT',
    'LoopbackConfig',
    'LoopbackMedium',
    'LoopbackTransport',
]
