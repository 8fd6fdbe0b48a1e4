"""API routers, one per namespace:

- documents: the caller's own documents and the category catalog
- kyc: the caller's KYC progress and submission
- verification: verification status lookup
- admin: cross-owner listing and KYC adjudication
- events: profile completeness reported by the profile system
"""

from docintake.api.routers.admin import router as admin_router
from docintake.api.routers.documents import router as documents_router
from docintake.api.routers.events import router as events_router
from docintake.api.routers.kyc import router as kyc_router
from docintake.api.routers.verification import router as verification_router

__all__ = [
    "admin_router",
    "documents_router",
    "events_router",
    "kyc_router",
    "verification_router",
]
