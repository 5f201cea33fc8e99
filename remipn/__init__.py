"""VPN profile manager that keeps at most one connection active."""

from __future__ import annotations

__version__ = "0.1.0"
