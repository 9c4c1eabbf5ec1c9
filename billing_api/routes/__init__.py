"""HTTP routers for the billing API."""

from billing_api.routes.invoices import router as invoices_router
from billing_api.routes.webhooks import router as webhooks_router
from billing_api.routes.work_items import router as work_items_router

__all__ = ["invoices_router", "webhooks_router", "work_items_router"]
