"""iam/ -- Identity and access management engine for TenantGate.

Layer rule: iam/ imports stdlib, third-party libraries, and core/ (the kernel).
It does NOT import from api/. api/ imports from iam/, not the other way
around. The one exception is iam/dependencies.py, which is part of the
FastAPI dependency injection system and may import from fastapi.
"""
