"""
Result codes.

:py:class:`RCode` is what the public entry points of
:py:class:`~ldapaaa.module.LdapModule` hand back to the host.
:py:class:`LDAPResult` is the finer grained classification the connection
pool gives to every bind, search and modify, and :py:class:`Membership` is the
tri-state answer of a single group membership check.
"""

import enum


class RCode(enum.Enum):
    """
    The result of a public entry point.
    """

    #: The request was processed and nothing had to change.
    OK = "ok"
    #: The request was processed and attributes were added to the request.
    UPDATED = "updated"
    #: There was nothing to do.
    NOOP = "noop"
    #: The user (or another required entry) does not exist.
    NOTFOUND = "notfound"
    #: The request or the configuration is malformed.
    INVALID = "invalid"
    #: The credentials were rejected.
    REJECT = "reject"
    #: The account is locked out or disabled.
    USERLOCK = "userlock"
    #: The directory could not be used.
    FAIL = "fail"


class LDAPResult(enum.Enum):
    """
    The classification of a single directory operation.
    """

    SUCCESS = "success"
    #: The target DN is malformed or does not exist.
    BAD_DN = "bad_dn"
    #: The credentials were invalid.
    REJECT = "reject"
    #: The server refused the operation for the bound identity.
    NOT_PERMITTED = "not_permitted"
    #: The search returned nothing.
    NO_RESULT = "no_result"
    #: Transport, timeout or protocol failure.
    FAIL = "fail"


class Membership(enum.Enum):
    """
    The answer of one group membership strategy.
    """

    MEMBER = "member"
    NOT_MEMBER = "not_member"
    #: The strategy could not decide; try the next one.
    INDETERMINATE = "indeterminate"
