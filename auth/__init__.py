"""auth/ -- Identity resolution for Gatehouse: passwords, tokens, sessions, guards.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/ or ratelimit/.
api/ imports from auth/, not the other way around.
"""
