"""auth/ -- Credential issuance and session lifecycle for SessionGuard.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
The one exception is auth/dependencies.py, which is part of FastAPI's
dependency-injection system and imports fastapi (never api/).
"""
