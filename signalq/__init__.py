"""SignalQ - signal-gated insight detection for chat conversations"""

from __future__ import annotations

__version__ = "0.1.0"
