"""Realtime delivery over WebSockets with Redis pub/sub fan-out between API processes."""
