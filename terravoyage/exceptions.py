"""Base exceptions for Terra Voyage."""


class TerraVoyageException(Exception):
    """Base exception for all Terra Voyage errors."""
    pass
