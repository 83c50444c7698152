"""Signaling relay: room registry and message routing."""
