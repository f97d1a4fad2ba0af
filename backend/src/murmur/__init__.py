"""Realtime presence, delivery and call signaling for the Murmur backend."""
