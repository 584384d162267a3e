"""Storage: persisted bot state, ledgers, health and the cycle lock."""

from perp_bot.storage.state_store import StateStore, CycleLocked

__all__ = ["StateStore", "CycleLocked"]
