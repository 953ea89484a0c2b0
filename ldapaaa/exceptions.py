"""
Exceptions raised by ldapaaa.

Each exception carries the :py:class:`~ldapaaa.codes.RCode` that a public
entry point returns when the exception reaches it.  Configuration problems
are reported with Django's ``ImproperlyConfigured`` instead.
"""

from .codes import RCode


class LdapAAAError(Exception):
    """
    Base class for all ldapaaa runtime errors.
    """

    rcode: RCode = RCode.FAIL


class DirectoryConnectionError(LdapAAAError):
    """
    A connection could not be opened, bound or recovered.
    """


class PoolExhaustedError(DirectoryConnectionError):
    """
    No connection became available before the acquire timeout expired.
    """


class DirectorySearchError(LdapAAAError):
    """
    A search failed with something other than "no such entry".
    """


class GroupLookupError(DirectorySearchError):
    """
    A group membership strategy hit a hard directory error.
    """


class FilterError(LdapAAAError):
    """
    A filter, DN, URL or template could not be built or parsed.
    """

    rcode = RCode.INVALID


class FilterTooLongError(FilterError):
    """
    An expanded filter or DN exceeded its maximum length.
    """


class AttributeMapOverflow(LdapAAAError):
    """
    An attribute map expanded to more attributes than its capacity.
    """

    def __init__(self, capacity: int) -> None:
        self.capacity = capacity
        super().__init__(
            f"Attribute map exceeds the maximum of {capacity} attributes (max_attrmap)"
        )


class ModifyListOverflow(LdapAAAError):
    """
    An update section produced more modifications than allowed.
    """

    def __init__(self, capacity: int) -> None:
        self.capacity = capacity
        super().__init__(
            f"Update section exceeds the maximum of {capacity} modifications "
            "(max_attrmap)"
        )
