"""Salon <-> client messaging: conversations, realtime delivery and email fallback."""
