"""auth/ -- Accounts, sessions, and license credentials for LicensePortal.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/ or web/.
api/ and web/ import from auth/, not the other way around.
"""
