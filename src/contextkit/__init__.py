"""contextkit: budgeted, provenance-tagged context assembly for code generation."""

__version__ = "0.1.0"
