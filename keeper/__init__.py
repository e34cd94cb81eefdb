"""Treasury keeper: converts protocol revenue into budgeted treasury operations."""

__version__ = "0.1.0"
