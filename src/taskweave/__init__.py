"""Task orchestration engine with resilient executor dispatch."""

__version__ = "0.1.0"
