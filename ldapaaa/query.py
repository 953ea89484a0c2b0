"""
Ad hoc directory queries by LDAP URL, for the host's expression evaluator.

``query_value`` returns one value::

    ldap:///ou=people,dc=example,dc=com?mail?sub?(uid=%{User-Name})

``query_map`` applies a set of mapping rules to every entry an URL returns.
Values substituted into the URL are escaped.  URL extensions are passed to
:py:func:`~ldapaaa.controls.parse_url_extensions`; commas inside a sort key
list must be written ``%2C``.
"""

import logging
from typing import TYPE_CHECKING, NamedTuple

from ldapurl import LDAPUrl, isLDAPUrl

from . import ldap
from .codes import LDAPResult, RCode
from .controls import parse_url_extensions
from .exceptions import FilterError
from .filters import MATCH_ALL, Expander, escape, unescape
from .maps import AttributeMapper, MappingRule

if TYPE_CHECKING:
    from typing import Any

    from .attributes import Request
    from .options import Options
    from .pool import ConnectionPool

logger = logging.getLogger(__name__)

__all__ = ["QueryFacade", "QueryResult", "escape", "unescape"]


class QueryResult(NamedTuple):
    rcode: RCode
    value: str | None = None


class QueryFacade:
    """
    Runs queries given as LDAP URLs.

    Args:
        options: the instance configuration
        pool: the connection pool

    """

    def __init__(self, options: "Options", pool: "ConnectionPool") -> None:
        self.options = options
        self.pool = pool

    def parse_url(self, request: "Request", url: str) -> LDAPUrl:
        """
        Expand ``url`` against ``request`` and parse it.

        Raises:
            FilterError: the URL is not a valid LDAP URL

        """
        expanded = Expander(request, escape=escape).expand(url)
        if not isLDAPUrl(expanded):
            msg = f"Invalid LDAP URL {expanded!r}"
            raise FilterError(msg)
        try:
            parsed = LDAPUrl(expanded)
        except (ValueError, KeyError) as e:
            msg = f"Invalid LDAP URL {expanded!r}: {e}"
            raise FilterError(msg) from e
        if parsed.hostport:
            logger.debug(
                "query.url.host_ignored host=%s uri=%s", parsed.hostport, self.options.uri
            )
        return parsed

    def _search_args(self, parsed: LDAPUrl) -> tuple[str, int, str, list["Any"]]:
        scope = parsed.scope if parsed.scope is not None else ldap.SCOPE_BASE  # type: ignore[attr-defined]
        extensions = []
        if parsed.extensions:
            extensions = [
                (ext.critical, ext.extype, ext.exvalue)
                for ext in parsed.extensions.values()
            ]
        controls = parse_url_extensions(extensions)
        return parsed.dn or "", scope, parsed.filterstr or MATCH_ALL, controls

    def query_value(self, request: "Request", url: str) -> QueryResult:
        """
        Return the first value of the single attribute named in ``url``, taken
        from the first entry found.

        Returns:
            A :py:class:`QueryResult`.  ``rcode`` is ``OK`` with the value (or
            ``None`` if the entry lacks the attribute), ``NOTFOUND`` if nothing
            matched, ``INVALID`` for a bad URL, ``FAIL`` if the search failed.

        """
        try:
            parsed = self.parse_url(request, url)
            base, scope, filterstr, controls = self._search_args(parsed)
        except FilterError as e:
            logger.error("query.url.invalid error=%s", e)
            return QueryResult(RCode.INVALID)
        attrs = parsed.attrs or []
        if len(attrs) != 1 or attrs[0] == "*":
            logger.error("query.url.invalid url=%s error=exactly one attribute required", url)
            return QueryResult(RCode.INVALID)
        with self.pool.connection() as handle:
            result = self.pool.search(
                handle, base, scope, filterstr, attrs, serverctrls=controls
            )
        if result.status is LDAPResult.NO_RESULT:
            return QueryResult(RCode.NOTFOUND)
        if result.status is LDAPResult.BAD_DN:
            return QueryResult(RCode.INVALID)
        if not result:
            return QueryResult(RCode.FAIL)
        _, entry = result.entries[0]
        values = {key.lower(): v for key, v in entry.items()}.get(attrs[0].lower(), [])
        if not values:
            return QueryResult(RCode.OK)
        return QueryResult(RCode.OK, values[0].decode("utf-8", errors="replace"))

    def query_map(
        self, request: "Request", url: str, rules: "list[str | dict | MappingRule]"
    ) -> RCode:
        """
        Search with the base, scope and filter of ``url`` and apply ``rules``
        to every entry found.

        Returns:
            ``UPDATED`` if any entry was found, ``NOOP`` if none was,
            ``INVALID`` for a bad URL or rule, ``FAIL`` if the search failed.

        """
        try:
            parsed = self.parse_url(request, url)
            base, scope, filterstr, controls = self._search_args(parsed)
            mapper = AttributeMapper(
                [MappingRule.parse(rule) for rule in rules], self.options.max_attrmap
            )
        except (FilterError, ValueError) as e:
            logger.error("query.map.invalid error=%s", e)
            return RCode.INVALID
        with mapper.expand(request) as expanded, self.pool.connection() as handle:
            result = self.pool.search(
                handle,
                base,
                scope,
                filterstr,
                list(expanded.attributes) or None,
                serverctrls=controls,
            )
            if result.status is LDAPResult.NO_RESULT:
                return RCode.NOOP
            if not result:
                return RCode.FAIL
            for dn, entry in result.entries:
                mapper.apply(expanded, dn, entry, request)
        return RCode.UPDATED
