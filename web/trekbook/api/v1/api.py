from fastapi import APIRouter

from trekbook.api.v1.endpoints import auth, bookings, checkout, tours


# Create main API router
api_v1_router = APIRouter()

# Include auth endpoints (magic-link return)
api_v1_router.include_router(
    auth.router,
    prefix="/auth",
    tags=["auth"]
)

# Include checkout endpoints (bound to the checkout client cookie)
api_v1_router.include_router(
    checkout.router,
    prefix="/checkout",
    tags=["checkout"]
)

# Include booking read-back endpoints
api_v1_router.include_router(
    bookings.router,
    prefix="/bookings",
    tags=["bookings"]
)

# Include tour catalog endpoints (public access)
api_v1_router.include_router(
    tours.router,
    prefix="/tours",
    tags=["tours"]
)
