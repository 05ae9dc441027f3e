"""auth/ -- Authentication and session lifecycle package for RagChat.

Layer rule: auth/ imports only stdlib + third-party libraries, plus the
Settings type from core/ for wiring. It does NOT import from api/ or chat/.
api/ imports from auth/, not the other way around.
"""
