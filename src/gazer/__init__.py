"""Gazer: automatic static site deployer for Kubernetes."""

__version__ = "0.1.0"
