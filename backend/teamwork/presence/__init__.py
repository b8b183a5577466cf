"""Last-seen tracking and the online set."""
