"""auth/ -- Identity, session token, and ORCID login package for the SSO service.

Layer rule: auth/ imports stdlib, third-party libraries, and core.config only.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
