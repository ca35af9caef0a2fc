"""Version 1 API: every endpoint router under one prefix."""

from fastapi import APIRouter

from hostelhub.api.v1 import admin, bookings, payments, units, webhooks

api_router = APIRouter()

for module, prefix, tag in (
    (bookings, "/bookings", "Bookings"),
    (payments, "/payments", "Payments"),
    (units, "/units", "Units"),
    (admin, "/admin", "Admin"),
    (webhooks, "/webhooks", "Webhooks"),
):
    api_router.include_router(module.router, prefix=prefix, tags=[tag])
