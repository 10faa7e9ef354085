"""
Offline Tile Pyramid Test Suite

Structure:
- unit/: geometry, manifest types, tile encoding, builder, blob stores, router, lifecycle
- integration/: the FastAPI gateway driven end to end through TestClient
- conftest.py: shared fixtures (in-memory store, scripted upstream, test pages)
"""
