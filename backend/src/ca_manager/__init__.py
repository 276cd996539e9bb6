"""Local certificate authority manager.

Creates a self-signed root CA, issues SAN-aware leaf certificates signed by it
and exports them as PEM bundles and PKCS#12 containers.
"""

__version__ = "1.0.0"
