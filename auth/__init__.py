"""auth/ -- Authentication and session-lifecycle package for Gatehouse.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
The one FastAPI-aware module is auth/dependencies.py.
"""
