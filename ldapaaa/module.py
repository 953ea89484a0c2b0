"""
The entry points a AAA host calls.

:py:class:`LdapModule` ties the pool, the resolvers and the attribute map
together::

    module = LdapModule("default")
    module.start()
    request = Request.from_identity(Identity("alice", "secret"))
    if module.authorize(request) in (RCode.OK, RCode.UPDATED):
        rcode = module.authenticate(request)
    module.stop()

Every entry point returns a :py:class:`~ldapaaa.codes.RCode` and always
returns its connection to the pool.
"""

import logging
from collections.abc import Callable
from functools import wraps
from typing import TYPE_CHECKING

from .codes import LDAPResult, RCode
from .clients import ClientLoader
from .exceptions import LdapAAAError
from .groups import GroupResolver
from .maps import AttributeMapper, MappingRule
from .modify import UserModifier
from .options import Options
from .pool import ClientLibrary, ConnectionPool
from .profiles import ProfileResolver
from .query import QueryFacade, QueryResult
from .users import UserResolver

if TYPE_CHECKING:
    from .attributes import Request
    from .options import UpdateSection

logger = logging.getLogger(__name__)

#: Control attributes that hold a known good password for the host's
#: authentication modules.
PASSWORD_ATTRIBUTES = (
    "Cleartext-Password",
    "Password-With-Header",
    "Crypt-Password",
    "MD5-Password",
    "SMD5-Password",
    "SHA-Password",
    "SSHA-Password",
    "NT-Password",
    "LM-Password",
)

#: How an end user bind result is reported by :py:meth:`LdapModule.authenticate`.
BIND_RCODES: dict[LDAPResult, RCode] = {
    LDAPResult.SUCCESS: RCode.OK,
    LDAPResult.NOT_PERMITTED: RCode.USERLOCK,
    LDAPResult.REJECT: RCode.REJECT,
    LDAPResult.BAD_DN: RCode.INVALID,
    LDAPResult.NO_RESULT: RCode.NOTFOUND,
}


def entry_point(func: Callable) -> Callable:
    """
    Decorator for public entry points: an :py:class:`~ldapaaa.exceptions.LdapAAAError`
    escaping ``func`` is logged and turned into its result code.
    """

    @wraps(func)
    def wrapper(self, request, *args, **kwargs) -> RCode:
        try:
            return func(self, request, *args, **kwargs)
        except LdapAAAError as e:
            self.logger.error(
                "%s.%s.error user=%s error=%s rcode=%s",
                self.name,
                func.__name__,
                request.username,
                e,
                e.rcode.value,
            )
            return e.rcode

    return wrapper


class LdapModule:
    """
    One configured LDAP instance.

    Args:
        name: the key into ``settings.LDAP_AAA``

    Keyword Args:
        options: use these options instead of reading the settings

    Raises:
        ImproperlyConfigured: the configuration is missing or invalid

    """

    def __init__(self, name: str = "default", options: Options | None = None) -> None:
        self.logger = logger
        self.name = name
        self.options = options if options is not None else Options(name)
        self.library = ClientLibrary(self.options)
        self.pool = ConnectionPool(self.options)
        self.users = UserResolver(self.options, self.pool)
        self.groups = GroupResolver(self.options, self.pool, self.users)
        self.mapper = AttributeMapper(
            self.options.update,
            self.options.max_attrmap,
            valuepair_attribute=self.options.valuepair_attribute,
        )
        self.profiles = ProfileResolver(self.options, self.pool, self.mapper)
        self.modifier = UserModifier(self.options, self.pool, self.users)
        self.queries = QueryFacade(self.options, self.pool)
        self.client_loader = ClientLoader(self.options, self.pool)
        #: Clients loaded by :py:meth:`start` when ``read_clients`` is set.
        self.clients: list[dict[str, str]] = []

    def start(self) -> None:
        """
        Initialize the client library, open ``pool.start`` connections and
        load clients if ``read_clients`` is set.

        Raises:
            DirectoryConnectionError: the initial connections could not be opened
            DirectorySearchError: the clients could not be loaded

        """
        self.library.start()
        self.pool.start()
        if self.options.read_clients:
            self.clients = self.load_clients()
        self.logger.info("%s.started uri=%s", self.name, self.options.uri)

    def stop(self) -> None:
        self.pool.close()
        self.library.stop()
        self.logger.info("%s.stopped", self.name)

    # -----------------------
    # Entry points
    # -----------------------

    @entry_point
    def authenticate(self, request: "Request") -> RCode:
        """
        Check the request's password by binding as the user.

        Returns:
            ``OK`` if the bind succeeded, ``REJECT`` for bad credentials,
            ``USERLOCK`` if the server refused the account, ``NOTFOUND`` if
            the user does not exist, ``INVALID`` if the request has no username
            or password or the DN is bad, ``FAIL`` otherwise.

        """
        username = request.username
        password = request.password
        if not username:
            self.logger.warning("auth.no_username")
            return RCode.INVALID
        if not password:
            self.logger.warning("auth.no_password user=%s", username)
            return RCode.INVALID
        sasl_options = self.options.user.sasl.expand(request)
        with self.pool.connection() as handle:
            user = self.users.find_user(handle, request)
            if user.rcode is not RCode.OK:
                self.logger.warning("auth.no_such_user user=%s", username)
                return user.rcode
            result = self.pool.bind(handle, user.dn, password, sasl_options)
        rcode = BIND_RCODES.get(result, RCode.FAIL)
        if rcode is RCode.OK:
            self.logger.info("auth.success user=%s dn=%s", username, user.dn)
        elif rcode is RCode.REJECT:
            self.logger.warning("auth.invalid_credentials user=%s", username)
        else:
            self.logger.warning("auth.failed user=%s result=%s", username, result.value)
        return rcode

    @entry_point
    def authorize(self, request: "Request") -> RCode:
        """
        Find the user entry and copy its attributes into the request.

        In order: check the access attribute, fill the membership cache,
        apply the profiles, then apply the attribute map to the user entry.

        Returns:
            ``UPDATED`` if attributes were added, ``OK`` if none were,
            ``USERLOCK`` if the account is disabled, ``NOTFOUND`` if there is
            no such user, ``INVALID`` or ``FAIL`` on errors.

        """
        options = self.options
        with (
            self.mapper.expand(request, options.synthetic_attributes()) as expanded,
            self.pool.connection() as handle,
        ):
            user = self.users.find_user(
                handle, request, attrs=expanded.attributes, want_entry=True
            )
            if user.rcode is not RCode.OK:
                return user.rcode
            rcode = self.users.check_access(user.entry)
            if rcode is not RCode.OK:
                return rcode
            if options.group.caching:
                self.groups.populate_cache(handle, request, user.entry)
            rcode = self.profiles.apply_profiles(handle, request, expanded, user.entry)
            if rcode in (RCode.FAIL, RCode.INVALID):
                return rcode
            updated = rcode is RCode.UPDATED
            if self.mapper.apply(expanded, user.dn, user.entry, request):
                updated = True
        self.check_reply(request)
        return RCode.UPDATED if updated else RCode.OK

    def check_reply(self, request: "Request") -> None:
        """
        Warn when authorize left no known good password in the control list.
        """
        if not any(attr in request.control for attr in PASSWORD_ATTRIBUTES):
            self.logger.warning(
                "authorize.no_password user=%s: no password attribute was mapped "
                "into the control list; only LDAP bind authentication will work",
                request.username,
            )

    @entry_point
    def accounting(self, request: "Request") -> RCode:
        return self._modify(request, self.options.accounting)

    @entry_point
    def post_auth(self, request: "Request") -> RCode:
        return self._modify(request, self.options.post_auth)

    def _modify(self, request: "Request", section: "UpdateSection | None") -> RCode:
        if section is None:
            return RCode.NOOP
        return self.modifier.modify(request, section)

    def is_member(self, request: "Request", group: str) -> bool:
        """
        Return ``True`` if the request's user is in ``group`` (a DN or name).

        Raises:
            GroupLookupError: the directory could not answer
            DirectoryConnectionError: no connection could be checked out

        """
        return self.groups.is_member(request, group)

    def compare(self, request: "Request", attribute: str, value: str) -> bool:
        """
        Evaluate ``attribute == value`` for the comparison attributes this
        instance provides (``group.group_attribute``, ``LDAP-Group`` by default).

        Raises:
            KeyError: this instance does not provide ``attribute``

        """
        if attribute.lower() == self.options.group.group_attribute.lower():
            return self.is_member(request, value)
        raise KeyError(attribute)

    @entry_point
    def query_map(
        self, request: "Request", url: str, rules: "list[str | dict | MappingRule]"
    ) -> RCode:
        return self.queries.query_map(request, url, rules)

    def query_value(self, request: "Request", url: str) -> QueryResult:
        try:
            return self.queries.query_value(request, url)
        except LdapAAAError as e:
            self.logger.error("%s.query_value.error url=%s error=%s", self.name, url, e)
            return QueryResult(e.rcode)

    def load_clients(self) -> list[dict[str, str]]:
        return self.client_loader.load()
