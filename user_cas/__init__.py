"""CAS authentication and just-in-time user provisioning."""

__version__ = "1.0.0"
