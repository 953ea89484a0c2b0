"""
Filter and DN construction.

This module expands ``%{...}`` templates against a request, escapes values
substituted into filters and DNs, combines filters with ``ldap_filter``, and
compares DNs and group names in a normalized form.
"""

import re
from collections.abc import Callable
from typing import TYPE_CHECKING

from ldap.dn import dn2str, str2dn
from ldap_filter import Filter

from . import ldap
from .attributes import LIST_NAMES
from .exceptions import FilterError, FilterTooLongError

if TYPE_CHECKING:
    from .attributes import Request

#: Longest filter or DN we will build.
MAX_FILTER_LENGTH = 1024

#: Characters that are always hex-escaped when substituted into a filter or DN.
SPECIAL_CHARACTERS = ',+"\\<>;*=()'

#: A filter that matches every entry.  Dropped when filters are combined.
ABSOLUTE_TRUE = "(&)"
MATCH_ALL = "(objectClass=*)"

#: Template aliases for the attributes every request has.
ALIASES: dict[str, tuple[str, str]] = {
    "username": ("request", "User-Name"),
    "password": ("request", "User-Password"),
}

TEMPLATE_RE = re.compile(
    r"%(?:\{(?:(?P<list>[A-Za-z]+):)?(?P<attribute>[\w.-]+)\}|(?P<percent>%))"
)
HEX_ESCAPE_RE = re.compile(r"(?:\\[0-9a-fA-F]{2})+")


def escape(value: str) -> str:
    """
    Escape ``value`` for safe substitution into an LDAP filter or DN.

    Every character in :py:data:`SPECIAL_CHARACTERS`, every control character,
    a leading ``#`` or space and a trailing space are replaced by ``\\XX``,
    where ``XX`` are the lowercase hex digits of each UTF-8 byte.

    Args:
        value: the raw value

    Returns:
        The escaped value.

    """
    last = len(value) - 1
    escaped = []
    for i, char in enumerate(value):
        if (
            char in SPECIAL_CHARACTERS
            or ord(char) < 0x20  # noqa: PLR2004
            or ord(char) == 0x7F  # noqa: PLR2004
            or (i == 0 and char in "# ")
            or (i == last and char == " ")
        ):
            escaped.append("".join(f"\\{b:02x}" for b in char.encode("utf-8")))
        else:
            escaped.append(char)
    return "".join(escaped)


def unescape(value: str) -> str:
    """
    Reverse :py:func:`escape`: turn runs of ``\\XX`` back into characters.
    """

    def replace(match: re.Match) -> str:
        raw = bytes.fromhex(match.group(0).replace("\\", ""))
        return raw.decode("utf-8", errors="replace")

    return HEX_ESCAPE_RE.sub(replace, value)


class Expander:
    """
    Expand ``%{Attribute}`` and ``%{list:Attribute}`` references against a
    :py:class:`~ldapaaa.attributes.Request`.

    A reference expands to the first value of the attribute, or to the empty
    string if the attribute is absent.  ``%%`` is a literal ``%``.  The
    ``username`` and ``password`` aliases address ``User-Name`` and
    ``User-Password`` in the request list.

    Args:
        request: the request to read attributes from

    Keyword Args:
        escape: called on every substituted value; use :py:func:`escape` when
            building filters and DNs
        max_length: longest result allowed, or ``None`` for no limit

    """

    def __init__(
        self,
        request: "Request",
        escape: Callable[[str], str] | None = None,
        max_length: int | None = MAX_FILTER_LENGTH,
    ) -> None:
        self.request = request
        self.escape = escape
        self.max_length = max_length

    def lookup(self, list_name: str | None, attribute: str) -> str:
        if list_name is None and attribute.lower() in ALIASES:
            list_name, attribute = ALIASES[attribute.lower()]
        list_name = (list_name or "request").lower()
        if list_name not in LIST_NAMES:
            msg = f"Unknown attribute list {list_name!r} in template"
            raise FilterError(msg)
        return self.request.get_list(list_name).get(attribute) or ""

    def expand(self, template: str) -> str:
        """
        Expand ``template``.

        Raises:
            FilterError: the template names an unknown attribute list
            FilterTooLongError: the result is longer than ``max_length``

        Returns:
            The expanded string.

        """

        def replace(match: re.Match) -> str:
            if match.group("percent"):
                return "%"
            value = self.lookup(match.group("list"), match.group("attribute"))
            if self.escape is not None:
                value = self.escape(value)
            return value

        result = TEMPLATE_RE.sub(replace, template)
        if self.max_length is not None and len(result) > self.max_length:
            msg = (
                f"Expansion of {template!r} is {len(result)} characters, "
                f"longer than the maximum of {self.max_length}"
            )
            raise FilterTooLongError(msg)
        return result


def is_template(value: str) -> bool:
    return TEMPLATE_RE.search(value) is not None


def parse_filter(filterstr: str) -> Filter:
    """
    Parse ``filterstr`` with ``ldap_filter``.

    Raises:
        FilterError: the filter is malformed

    """
    try:
        return Filter.parse(filterstr)
    except Exception as e:
        msg = f"Invalid filter {filterstr!r}: {e}"
        raise FilterError(msg) from e


def join_filters(*filters: str | None) -> str:
    """
    AND together ``filters``, dropping empty ones and ``(&)``.  Each filter is
    checked with ``ldap_filter`` but kept as written, so escaped values reach
    the server untouched.

    If nothing is left, return a filter that matches every entry.

    Raises:
        FilterError: one of the filters is malformed

    """
    parts = [
        f.strip() for f in filters if f and f.strip() and f.strip() != ABSOLUTE_TRUE
    ]
    for part in parts:
        parse_filter(part)
    if not parts:
        return MATCH_ALL
    if len(parts) == 1:
        return parts[0]
    return f"(&{''.join(parts)})"


# -----------------------
# DNs and group names
# -----------------------


def is_dn(value: str) -> bool:
    """
    Return ``True`` if ``value`` parses as a non-empty DN.
    """
    if "=" not in value:
        return False
    try:
        return bool(str2dn(value))
    except ldap.DECODE_ERROR:
        return False


def normalize_dn(dn: str) -> str:
    """
    Return a canonical form of ``dn``: attribute types and values are lower
    cased, runs of whitespace inside values are collapsed, and the AVAs of
    multi-valued RDNs are sorted.  Normalizing a normalized DN returns it
    unchanged.

    Raises:
        FilterError: ``dn`` is not a valid DN

    """
    if "=" not in dn:
        msg = f"Invalid DN {dn!r}"
        raise FilterError(msg)
    try:
        rdns = str2dn(dn)
    except ldap.DECODE_ERROR as e:
        msg = f"Invalid DN {dn!r}"
        raise FilterError(msg) from e
    normalized = []
    for rdn in rdns:
        avas = [
            (attr.lower(), " ".join(value.split()).lower(), flags)
            for attr, value, flags in rdn
        ]
        normalized.append(sorted(avas))
    return dn2str(normalized)


def normalize_name(name: str) -> str:
    return " ".join(name.split()).lower()


def dn_equal(dn1: str, dn2: str) -> bool:
    """
    Return ``True`` if ``dn1`` and ``dn2`` name the same entry, ignoring letter
    case and insignificant whitespace.
    """
    try:
        return normalize_dn(dn1) == normalize_dn(dn2)
    except FilterError:
        return False
