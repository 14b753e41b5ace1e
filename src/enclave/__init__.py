"""Enclave: isolated workspaces driven by a pool of assistant workers."""

__version__ = "0.1.0"
