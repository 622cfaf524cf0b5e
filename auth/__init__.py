"""auth/ -- Session authentication and role/permission authorization for Crewgate.

Layer rule: auth/ imports only core/, stdlib and third-party libraries.
It does NOT import from api/. api/ imports from auth/, not the other way around.
auth/dependencies.py is the only module that imports fastapi.
"""
