"""Politeness-aware fetch scheduling for web crawlers."""

from __future__ import annotations

__version__ = "0.1.0"
