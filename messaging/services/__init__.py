"""
Messaging services.

Module-level async functions holding the business rules for conversations,
messages, unread counters and email notifications. REST routes and the
realtime gateway both call into these; neither enforces invariants itself.
"""
