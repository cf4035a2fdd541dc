"""Participant identity for the chat core.

Services:
    - IdentityService: resolves opaque session tokens to participant IDs.
"""
