"""Bridge between web platform accounts and an external messaging channel."""
