"""AutoInvoice: documents from chat messages and web forms."""

__version__ = "0.3.0"
