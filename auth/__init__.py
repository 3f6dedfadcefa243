"""auth/ -- End-user identity, credentials and tokens for Tokenly.

Layer rule: auth/ imports from core/ and tenants/ (for Application and
AuthConfig). It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
