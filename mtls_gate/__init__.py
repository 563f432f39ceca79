"""
Mutual-TLS HTTPS server with client certificate authorization.
"""

__version__ = "1.0.0"
