"""auth/ -- Authentication and session lifecycle package for tokengate.

Layer rule: auth/ imports only stdlib, third-party libraries, core/config
and the cache/ session store. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
