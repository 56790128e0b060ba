"""ratelimit/ -- Shared fixed-window rate limiting.

Layer rule: ratelimit/ imports only stdlib and third-party libraries.
It does NOT import from api/ or auth/.
"""
