"""auth/ -- Authentication and session-trust core for Enisi.

Layer rule: auth/ imports only core/, stdlib and third-party libraries.
It does NOT import from api/ or audit/.
api/ imports from auth/, not the other way around.
"""
