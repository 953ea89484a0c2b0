"""
User resolution: find the one directory entry that belongs to a request's
identity.
"""

import logging
from typing import TYPE_CHECKING, NamedTuple

from .codes import LDAPResult, RCode
from .exceptions import FilterError
from .filters import Expander, escape, join_filters

if TYPE_CHECKING:
    from .attributes import Request
    from .options import Options
    from .pool import ConnectionHandle, ConnectionPool
    from .typing import LDAPEntry

logger = logging.getLogger(__name__)

#: Control attribute that remembers the user's DN for the rest of the request.
USER_DN_ATTRIBUTE = "LDAP-UserDN"


class UserResult(NamedTuple):
    rcode: RCode
    dn: str | None = None
    entry: "LDAPEntry | None" = None


class UserResolver:
    """
    Finds the user entry for a request.

    Args:
        options: the instance configuration
        pool: the connection pool

    """

    def __init__(self, options: "Options", pool: "ConnectionPool") -> None:
        self.options = options
        self.pool = pool

    def find_user(
        self,
        handle: "ConnectionHandle",
        request: "Request",
        attrs: list[str] | None = None,
        want_entry: bool = False,
    ) -> UserResult:
        """
        Find the user entry for ``request``.

        When the entry itself is not needed and an earlier call already stored
        the user's DN in the control list as ``LDAP-UserDN``, that DN is
        returned without searching.  Otherwise the user filter and base DN are
        expanded against the request and one search is issued.  Exactly one
        match is required: no match and more than one match are both
        ``NOTFOUND``.

        Args:
            handle: the checked out connection
            request: the request to resolve

        Keyword Args:
            attrs: attributes to fetch with the entry
            want_entry: return the entry's attributes as well as its DN

        Returns:
            A :py:class:`UserResult`.  ``rcode`` is ``OK`` on success,
            ``NOTFOUND`` if there is no single matching entry, ``INVALID`` if
            the filter or base DN cannot be built, ``FAIL`` if the search failed.

        """
        if not want_entry:
            cached = request.control.get(USER_DN_ATTRIBUTE)
            if cached:
                return UserResult(RCode.OK, cached)
        user = self.options.user
        expander = Expander(request, escape=escape)
        try:
            base_dn = expander.expand(user.base_dn)
            filterstr = join_filters(expander.expand(user.filter) if user.filter else None)
        except FilterError as e:
            logger.error("user.filter.invalid error=%s", e)
            return UserResult(RCode.INVALID)
        controls = [user.sort_control] if user.sort_control else None
        result = self.pool.search(
            handle,
            base_dn,
            user.scope,
            filterstr,
            list(attrs) if attrs else None,
            serverctrls=controls,
        )
        if result.status is LDAPResult.NO_RESULT:
            logger.warning(
                "user.not_found user=%s base=%s filter=%s",
                request.username,
                base_dn,
                filterstr,
            )
            return UserResult(RCode.NOTFOUND)
        if result.status is LDAPResult.BAD_DN:
            return UserResult(RCode.INVALID)
        if not result:
            return UserResult(RCode.FAIL)
        if len(result.entries) > 1:
            logger.warning(
                "user.ambiguous user=%s count=%d dns=%s",
                request.username,
                len(result.entries),
                "; ".join(dn for dn, _ in result.entries),
            )
            return UserResult(RCode.NOTFOUND)
        dn, entry = result.entries[0]
        request.control.set(USER_DN_ATTRIBUTE, dn)
        logger.debug("user.found user=%s dn=%s", request.username, dn)
        return UserResult(RCode.OK, dn, entry if want_entry else None)

    def check_access(self, entry: "LDAPEntry") -> RCode:
        """
        Check the user's access attribute.

        With ``access_positive`` the attribute must be present and must not
        start with ``false``.  Without it, the attribute must be absent or
        ``false``.

        Returns:
            ``OK`` if the account is enabled, ``USERLOCK`` if not.

        """
        user = self.options.user
        if not user.access_attribute:
            return RCode.OK
        values = {key.lower(): v for key, v in entry.items()}.get(
            user.access_attribute.lower(), []
        )
        if values:
            value = values[0].decode("utf-8", errors="replace")
            if user.access_positive:
                if value.lower().startswith("false"):
                    logger.warning(
                        "user.access.disabled attribute=%s value=%s",
                        user.access_attribute,
                        value,
                    )
                    return RCode.USERLOCK
            elif value.lower() != "false":
                logger.warning(
                    "user.access.locked attribute=%s value=%s",
                    user.access_attribute,
                    value,
                )
                return RCode.USERLOCK
        elif user.access_positive:
            logger.warning("user.access.missing attribute=%s", user.access_attribute)
            return RCode.USERLOCK
        return RCode.OK
