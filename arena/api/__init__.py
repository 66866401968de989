"""
HTTP surface for the Runner Arena backend.

A thin FastAPI layer: it authenticates nothing itself (the verified identity
arrives in the X-Player-Id header), translates payloads, and maps operation
results onto HTTP status codes.
"""
