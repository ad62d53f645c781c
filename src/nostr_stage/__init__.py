"""Nostr Stage: identity, signing and relay publishing service."""

__version__ = "0.1.0"
