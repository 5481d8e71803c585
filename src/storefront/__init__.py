"""storefront - order creation and payment reconciliation backend."""

__version__ = "0.1.0"
