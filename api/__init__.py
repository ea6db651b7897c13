"""Check-in Engine - status API package."""
