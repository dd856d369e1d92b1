"""hostdiag: Windows host diagnostic scanner."""

__version__ = "0.1.0"
