"""Read-only selectors for the billing kernel."""

from billing_kernel.selectors.billing_selector import BillingSelector
from billing_kernel.selectors.invoice_selector import InvoiceSelector

__all__ = ["BillingSelector", "InvoiceSelector"]
