"""
Exposure Backend — Application Package Initializer
====================================================

What: Marks the `app` directory as a Python package.
Why:  Enables module imports like `from app.config import settings`.
Who:  Used implicitly by Python's import system and explicitly by Alembic, pytest, and uvicorn.

Architecture Note:

    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │         Services (Business Logic)   │  ← Places, photos, auth, slugs
    ├─────────────────────────────────────┤
    │   ConcurrencyGuard (per-place lock) │  ← Photo mutations only
    ├─────────────────────────────────────┤
    │       Models & Schemas (Data)       │  ← SQLAlchemy ORM + Pydantic
    ├─────────────────────────────────────┤
    │   Database + File Store (Storage)   │  ← Async SQLAlchemy, aiofiles
    └─────────────────────────────────────┘
"""

__version__ = "1.0.0"
