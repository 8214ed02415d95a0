"""Call signaling over a shared single-slot mailbox."""
