"""Room messaging channel and unread tracking."""
