"""auth/ -- Identity, refresh sessions, audit trail and retention for AccessBridge.

Layer rule: auth/ imports from core/ plus stdlib and third-party libraries.
It does NOT import from api/ or artemis/.
api/ imports from auth/, not the other way around.
"""
