"""auth/ -- Authentication and authorization package for AppPortal.

Layer rule: auth/ imports stdlib, third-party libraries, and core.config.
It does NOT import from api/ or portal/.
api/ imports from auth/, not the other way around.
"""
