"""
Billing Kernel - milestone billing allocation and payment reconciliation.

A transactional billing core with:
- A per-project percentage ledger that never exceeds 100%
- Task/milestone billing linkage with explicit synchronization
- Draft-first invoices with a closed status workflow
- Append-only payments and derived invoice status
- Idempotent reconciliation of payment-processor events
"""

__version__ = "0.1.0"
