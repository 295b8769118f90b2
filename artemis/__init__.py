"""artemis/ -- Signed calls to the access platform's Artemis OpenAPI gateway.

Layer rule: artemis/ imports only core/, stdlib and third-party libraries.
It does NOT import from auth/ or api/.
"""
