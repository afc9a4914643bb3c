"""auth/ -- User and role directories plus the authorization gate for wikiauth.

Layer rule: auth/ imports only stdlib, third-party libraries and core.config.
It does NOT import from api/. sessions/ is referenced by the gate for type
checking only; the live SessionStore is injected at startup.
api/ imports from auth/, not the other way around.
"""
