"""
Image2Sheet Backend — Application Package Initializer
=====================================================

What: Marks the `image2sheet` directory as a Python package.
Who:  Imported by uvicorn (`image2sheet.main:app`), pytest and the services.

Architecture Note:
    The backend keeps a layered layout:

    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │   Services (Quota, Entitlement,     │  ← Admission, billing, extraction
    │   Auth, Extraction, Gemini)         │
    ├─────────────────────────────────────┤
    │       Models & Schemas (Data)       │  ← SQLAlchemy ORM + Pydantic
    ├─────────────────────────────────────┤
    │        Database (Persistence)       │  ← Async SQLAlchemy sessions
    └─────────────────────────────────────┘

    The quota / entitlement engine lives entirely in the services layer:
    routes only translate its decisions into HTTP responses.
"""

__version__ = "1.0.0"
