# This file is here so that we can patch the ldap module in our tests.
# python-ldap-faker patches ``ldapaaa.ldap.initialize``, so every module in
# this package talks to python-ldap through this module.
import ldap
from ldap import *  # noqa: F403

__version__ = ldap.__version__
