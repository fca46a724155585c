"""havend: a Reticulum-hosted room chat hub."""

__version__ = "0.1.0"
