"""Email verification core for the waitlist: codes, limits, bans and the verification state machine."""
