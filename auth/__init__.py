"""auth/ -- Identity, role resolution and access control for SchoolGate.

Layer rule: auth/ imports only stdlib, third-party libraries, core/,
docstore/ and cache/. It does NOT import from api/ or web/
api/, web/ and the CLI import from auth/, not the other way around.
"""
