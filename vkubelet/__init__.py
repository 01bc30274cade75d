"""Controllers, HTTP handlers and helpers for operating a virtual node in Kubernetes."""

__version__ = "0.1.0"