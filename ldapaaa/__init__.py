"""
LDAP directory resolution and authorization for AAA request pipelines.
"""

__version__ = "1.0.0"
