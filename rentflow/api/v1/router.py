"""Main API router that includes all endpoint routers."""

from fastapi import APIRouter

from rentflow.api.v1 import checkout, inconsistencies, jobs, refunds, transitions

api_router = APIRouter()

# Transitions and gates
api_router.include_router(transitions.router, prefix="/bookings", tags=["Transitions"])

# Refunds and cancellation
api_router.include_router(refunds.router, prefix="/bookings", tags=["Refunds"])

# Hosted checkout return
api_router.include_router(checkout.router, prefix="/checkout", tags=["Checkout"])

# Operator reconciliation
api_router.include_router(inconsistencies.router, tags=["Inconsistencies"])

# Background jobs
api_router.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])
