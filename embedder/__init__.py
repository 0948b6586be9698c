"""
runtime-embedder.

Repackages an installed runtime into a relocatable, versioned bundle, with
the managed assemblies gzip-packed into a single offset-addressed blob.
"""

__all__ = ['__version__']

__version__ = '0.1.0'
