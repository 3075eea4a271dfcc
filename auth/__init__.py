"""auth/ -- Identity, credentials, tokens, lockout and permission rules for TeamGuard.

Layer rule: auth/ imports from core/ and third-party libraries only.
It does NOT import from api/ or teams/. api/ and teams/ import from auth/,
not the other way around. The cache is handed in, never imported, except
for type hints.
"""
