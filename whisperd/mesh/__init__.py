"""
Whisper Mesh Module

Flood routing over directly linked neighbours:
- At-most-once handling per packet id
- TTL-bounded relay
- Local delivery of addressed and broadcast packets
"""

from .routing import (
    Router,
    RoutingDecision,
    RoutingResult,
)

__all__ = [
    'Router',
    'RoutingDecision',
    'RoutingResult',
]
