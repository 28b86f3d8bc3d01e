"""
Pytest suite for the order reconciliation backend.

Test categories:
- Unit tests: lifecycle rules, payload normalization, signatures
- Service tests: async services against in-memory SQLite
- API tests: full FastAPI app through httpx ASGITransport
"""
