"""Backend for the Telegram Mini-App storefront."""

__version__ = "1.0.0"
