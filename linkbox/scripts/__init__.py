"""
Operational entry points for the outbox worker and admin commands.
"""
