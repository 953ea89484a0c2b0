"""
Group membership.

Whether a user is in a group is decided by up to three strategies, tried in
order until one of them gives a definite answer:

1. the request's :py:class:`MembershipCache`, filled in during authorize
2. a search for group objects that list the user (``group.membership_filter``)
3. the user entry's own list of groups (``group.membership_attribute``)

Each strategy is a provider returning a :py:class:`~ldapaaa.codes.Membership`;
``INDETERMINATE`` hands over to the next one.  If nothing decides, the user is
not a member.
"""

import logging
from contextlib import ExitStack
from typing import TYPE_CHECKING

from . import ldap
from .codes import LDAPResult, Membership, RCode
from .exceptions import FilterError, GroupLookupError
from .filters import Expander, escape, is_dn, join_filters, normalize_dn, normalize_name

if TYPE_CHECKING:
    from collections.abc import Callable

    from .attributes import Request
    from .options import Options
    from .pool import ConnectionHandle, ConnectionPool
    from .typing import LDAPEntry
    from .users import UserResolver

logger = logging.getLogger(__name__)


class GroupCheckValue:
    """
    A group identifier to check membership of: either a group DN or a group
    name.  It is classified and normalized once, when it is created.

    Args:
        value: the DN or name as given by the caller

    """

    def __init__(self, value: str) -> None:
        self.value = value
        #: ``True`` if :py:attr:`value` is a DN.
        self.is_dn = is_dn(value)
        #: The normalized DN or name used for every comparison.
        self.normalized = normalize_dn(value) if self.is_dn else normalize_name(value)

    def __repr__(self) -> str:
        form = "dn" if self.is_dn else "name"
        return f"<GroupCheckValue {form}={self.normalized!r}>"


class MembershipCache:
    """
    The groups known to contain the current request's user.

    Names and DNs are stored normalized.  Until :py:attr:`populated` is set the
    cache knows nothing, and lookups are ``INDETERMINATE``.
    """

    def __init__(self) -> None:
        self.names: set[str] = set()
        self.dns: set[str] = set()
        self.populated = False

    def add_name(self, name: str) -> None:
        self.names.add(normalize_name(name))

    def add_dn(self, dn: str) -> None:
        self.dns.add(normalize_dn(dn))

    def lookup(self, check: GroupCheckValue) -> Membership:
        if not self.populated:
            return Membership.INDETERMINATE
        known = self.dns if check.is_dn else self.names
        return Membership.MEMBER if check.normalized in known else Membership.NOT_MEMBER


class DirectoryLookup:
    """
    The connection and user DN shared by the directory strategies of one
    membership check.  Both are fetched the first time a strategy asks for
    them, so a check answered from the cache never touches the directory.
    """

    def __init__(
        self, resolver: "GroupResolver", request: "Request", stack: ExitStack
    ) -> None:
        self.resolver = resolver
        self.request = request
        self.stack = stack
        self._handle: ConnectionHandle | None = None
        self._user_dn: str | None = None
        self._user_resolved = False

    @property
    def handle(self) -> "ConnectionHandle":
        if self._handle is None:
            self._handle = self.stack.enter_context(self.resolver.pool.connection())
        return self._handle

    def user_dn(self) -> str | None:
        """
        Return the user's DN, or ``None`` if there is no such user.

        Raises:
            GroupLookupError: the user search failed

        """
        if not self._user_resolved:
            user = self.resolver.users.find_user(self.handle, self.request)
            if user.rcode not in (RCode.OK, RCode.NOTFOUND):
                msg = f"Could not resolve the user DN: {user.rcode.value}"
                raise GroupLookupError(msg)
            self._user_dn = user.dn
            self._user_resolved = True
        return self._user_dn


class GroupResolver:
    """
    Decides group membership and fills the membership cache.

    Args:
        options: the instance configuration
        pool: the connection pool
        users: resolves the user's DN

    """

    def __init__(
        self, options: "Options", pool: "ConnectionPool", users: "UserResolver"
    ) -> None:
        self.options = options
        self.pool = pool
        self.users = users
        #: The strategies, in the order they are tried.
        self.providers: list[
            Callable[[Request, GroupCheckValue, DirectoryLookup], Membership]
        ] = [
            self.check_cached,
            self.check_group_objects,
            self.check_user_object,
        ]

    def is_member(self, request: "Request", value: str) -> bool:
        """
        Return ``True`` if the request's user is a member of the group ``value``
        (a group DN or name).

        Raises:
            GroupLookupError: a strategy hit a directory error

        """
        if not value:
            return False
        try:
            check = GroupCheckValue(value)
        except FilterError:
            logger.warning("group.check.invalid value=%s", value)
            return False
        with ExitStack() as stack:
            lookup = DirectoryLookup(self, request, stack)
            for provider in self.providers:
                result = provider(request, check, lookup)
                if result is not Membership.INDETERMINATE:
                    logger.debug(
                        "group.check user=%s group=%s result=%s strategy=%s",
                        request.username,
                        value,
                        result.value,
                        provider.__name__,
                    )
                    return result is Membership.MEMBER
        return False

    # -----------------------
    # Strategies
    # -----------------------

    def check_cached(
        self, request: "Request", check: GroupCheckValue, lookup: DirectoryLookup
    ) -> Membership:
        group = self.options.group
        cacheable = group.cacheable_dn if check.is_dn else group.cacheable_name
        if not cacheable:
            return Membership.INDETERMINATE
        return request.membership_cache.lookup(check)

    def check_group_objects(
        self, request: "Request", check: GroupCheckValue, lookup: DirectoryLookup
    ) -> Membership:
        group = self.options.group
        if not group.membership_filter:
            return Membership.INDETERMINATE
        if lookup.user_dn() is None:
            return Membership.NOT_MEMBER
        if check.is_dn:
            group_dns = [check.value]
        else:
            group_dns = self.name_to_dns(lookup.handle, check.value)
        try:
            filterstr = join_filters(
                Expander(request, escape=escape).expand(group.membership_filter)
            )
        except FilterError as e:
            msg = f"Invalid group membership filter: {e}"
            raise GroupLookupError(msg) from e
        for group_dn in group_dns:
            result = self.pool.search(
                lookup.handle,
                group_dn,
                ldap.SCOPE_BASE,  # type: ignore[attr-defined]
                filterstr,
                [group.name_attribute],
            )
            if result:
                return Membership.MEMBER
            if result.status is not LDAPResult.NO_RESULT:
                msg = f"Group search at {group_dn} failed: {result.status.value}"
                raise GroupLookupError(msg)
        return Membership.NOT_MEMBER

    def check_user_object(
        self, request: "Request", check: GroupCheckValue, lookup: DirectoryLookup
    ) -> Membership:
        group = self.options.group
        if not group.membership_attribute:
            return Membership.INDETERMINATE
        user_dn = lookup.user_dn()
        if user_dn is None:
            return Membership.NOT_MEMBER
        result = self.pool.search(
            lookup.handle,
            user_dn,
            ldap.SCOPE_BASE,  # type: ignore[attr-defined]
            "(objectClass=*)",
            [group.membership_attribute],
        )
        if result.status is LDAPResult.NO_RESULT:
            return Membership.NOT_MEMBER
        if not result:
            msg = f"Could not read {group.membership_attribute} of {user_dn}"
            raise GroupLookupError(msg)
        values = self.attribute_values(result.entries[0][1], group.membership_attribute)
        # The check value is converted to the other form at most once.
        other_forms: set[str] | None = None
        for value in values:
            if is_dn(value) == check.is_dn:
                candidate = normalize_dn(value) if check.is_dn else normalize_name(value)
                if candidate == check.normalized:
                    return Membership.MEMBER
                continue
            if other_forms is None:
                if check.is_dn:
                    name = self.dn_to_name(lookup.handle, check.value)
                    other_forms = {normalize_name(name)} if name else set()
                else:
                    other_forms = {
                        normalize_dn(dn) for dn in self.name_to_dns(lookup.handle, check.value)
                    }
            candidate = normalize_name(value) if check.is_dn else normalize_dn(value)
            if candidate in other_forms:
                return Membership.MEMBER
        return Membership.NOT_MEMBER

    # -----------------------
    # Name and DN conversion
    # -----------------------

    def attribute_values(self, entry: "LDAPEntry", attribute: str) -> list[str]:
        values = {key.lower(): v for key, v in entry.items()}.get(attribute.lower(), [])
        return [v.decode("utf-8", errors="replace") for v in values]

    def name_to_dns(self, handle: "ConnectionHandle", name: str) -> list[str]:
        """
        Return the DNs of the groups called ``name``.

        Raises:
            GroupLookupError: the search failed

        """
        group = self.options.group
        filterstr = join_filters(
            f"({group.name_attribute}={escape(name)})", group.filter
        )
        result = self.pool.search(
            handle, group.base_dn, group.scope, filterstr, [group.name_attribute]
        )
        if result.status is LDAPResult.NO_RESULT:
            logger.debug("group.name_to_dn.not_found name=%s", name)
            return []
        if not result:
            msg = f"Could not resolve group name {name!r}: {result.status.value}"
            raise GroupLookupError(msg)
        return [dn for dn, _ in result.entries]

    def dn_to_name(self, handle: "ConnectionHandle", dn: str) -> str | None:
        """
        Return the name of the group at ``dn``, or ``None`` if it does not
        exist or has no name.

        Raises:
            GroupLookupError: the search failed

        """
        group = self.options.group
        result = self.pool.search(
            handle, dn, ldap.SCOPE_BASE, "(objectClass=*)", [group.name_attribute]  # type: ignore[attr-defined]
        )
        if result.status is LDAPResult.NO_RESULT:
            logger.debug("group.dn_to_name.not_found dn=%s", dn)
            return None
        if not result:
            msg = f"Could not resolve group DN {dn!r}: {result.status.value}"
            raise GroupLookupError(msg)
        names = self.attribute_values(result.entries[0][1], group.name_attribute)
        return names[0] if names else None

    # -----------------------
    # Cache population
    # -----------------------

    def populate_cache(
        self, handle: "ConnectionHandle", request: "Request", entry: "LDAPEntry"
    ) -> None:
        """
        Fill the request's membership cache with the user's groups, as names
        and/or DNs depending on ``group.cacheable_name`` and
        ``group.cacheable_dn``.

        Groups come from the membership attribute of the already fetched user
        entry and from a search for group objects matching the membership
        filter.  Every cached value is also added to the control list under
        ``group.cache_attribute``.

        Raises:
            GroupLookupError: a search failed

        """
        group = self.options.group
        cache = request.membership_cache
        cached: list[str] = []
        if group.membership_attribute:
            for value in self.attribute_values(entry, group.membership_attribute):
                if is_dn(value):
                    if group.cacheable_dn:
                        cached.append(value)
                        cache.add_dn(value)
                    if group.cacheable_name:
                        name = self.dn_to_name(handle, value)
                        if name:
                            cached.append(name)
                            cache.add_name(name)
                else:
                    if group.cacheable_name:
                        cached.append(value)
                        cache.add_name(value)
                    if group.cacheable_dn:
                        for dn in self.name_to_dns(handle, value):
                            cached.append(dn)
                            cache.add_dn(dn)
        if group.membership_filter:
            try:
                filterstr = join_filters(
                    group.filter,
                    Expander(request, escape=escape).expand(group.membership_filter),
                )
            except FilterError as e:
                msg = f"Invalid group membership filter: {e}"
                raise GroupLookupError(msg) from e
            result = self.pool.search(
                handle, group.base_dn, group.scope, filterstr, [group.name_attribute]
            )
            if not result and result.status is not LDAPResult.NO_RESULT:
                msg = f"Group membership search failed: {result.status.value}"
                raise GroupLookupError(msg)
            for dn, attrs in result.entries:
                if group.cacheable_dn:
                    cached.append(dn)
                    cache.add_dn(dn)
                if group.cacheable_name:
                    names = self.attribute_values(attrs, group.name_attribute)
                    if not names:
                        logger.warning(
                            "group.cache.no_name dn=%s attribute=%s",
                            dn,
                            group.name_attribute,
                        )
                    for name in names:
                        cached.append(name)
                        cache.add_name(name)
        cache.populated = True
        for value in cached:
            request.control.append(group.cache_attribute, value)
        logger.debug(
            "group.cache.populated user=%s count=%d", request.username, len(cached)
        )
