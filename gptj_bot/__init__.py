"""Discord relay that feeds chat messages to a hosted GPT-J pipeline.

Requests are handled by a single-flight queue so only one inference call is
in flight at a time while later requests wait their turn.
"""
