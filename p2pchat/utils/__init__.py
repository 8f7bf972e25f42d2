"""Utility modules shared across p2pchat."""
from __future__ import annotations
