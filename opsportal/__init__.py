"""Multi-tenant operations portal: authorization and identity resolution core."""

__version__ = "0.1.0"
