"""
billing_api -- HTTP surface of the billing engine.

Architecture position:
    Outermost layer.  Depends on billing_config and billing_kernel; neither
    of them imports from here.
"""

from billing_api.app import create_app

__all__ = ["create_app"]
