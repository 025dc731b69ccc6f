"""chainpulse: resilience layer for rate-limited social and chain APIs."""
