"""auth/ -- Credential Store, Token Issuer, and the Verification/Reset ledgers.

Layer rule: auth/ imports only stdlib + third-party libraries + core/.
It does NOT import from api/ or client/.
api/ imports from auth/, not the other way around.
"""
