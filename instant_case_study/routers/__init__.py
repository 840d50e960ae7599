from .billing import router as billing_router
from .case_studies import router as case_studies_router
from .users import router as users_router

__all__ = [
    "billing_router",
    "case_studies_router",
    "users_router",
]
