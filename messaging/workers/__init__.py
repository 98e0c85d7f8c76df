"""Scheduled background workers: email digest flush and message retention."""
