"""
Connection phase enumeration.

Rules:
- This enum names the variants of ConnectionState only.
- No behavior, no helper methods, no side effects.
- Transitions are defined exclusively in the reducer.
"""

from __future__ import annotations

from enum import Enum


class Phase(str, Enum):
    """
    Externally visible connection lifecycle phase.

    Values are the strings exposed by the health endpoint.
    """

    DISCONNECTED = "disconnected"
    AWAITING_PAIRING = "awaiting_qr_scan"
    CONNECTED = "connected"
    FAILED = "failed"
