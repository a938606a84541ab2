"""
Canonical audit event type strings.
"""

EVENT_CONVERSATIONS_ARCHIVED = "conversations.archived"
EVENT_SUMMARY_CREATED = "summary.created"
EVENT_PROFILE_REFRESH_REQUESTED = "profile.refresh_requested"
EVENT_PROFILE_REFRESHED = "profile.refreshed"

__all__ = [
    "EVENT_CONVERSATIONS_ARCHIVED",
    "EVENT_SUMMARY_CREATED",
    "EVENT_PROFILE_REFRESH_REQUESTED",
    "EVENT_PROFILE_REFRESHED",
]
