"""auth/ -- Identity, credential and session package for idgate.

Layer rule: auth/ imports from core/, cache/ and mail/ plus third-party
libraries. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
