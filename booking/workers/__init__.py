"""Background workers for the booking layer."""
