"""auth/ -- Password hashing, session cookies and the credential store.

Layer rule: auth/ imports from core/ and third-party libraries only.
It does NOT import from api/ or cache/ at runtime.
api/ imports from auth/, not the other way around.
"""
