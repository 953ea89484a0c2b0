"""
LDAP controls.

The server side sort control (RFC 2891) is used by ``user.sort_by`` and by the
``sss`` extension of LDAP URLs given to the query facade.
"""

import logging
import re
from collections.abc import Iterable
from typing import ClassVar

from ldap.controls import LDAPControl
from pyasn1.codec.ber import encoder  # type: ignore[import]
from pyasn1.type import namedtype, tag, univ  # type: ignore[import]

from .exceptions import FilterError

logger = logging.getLogger(__name__)

SORT_KEY_RE = re.compile(r"^(?P<reverse>-)?(?P<attribute>[\w.;-]+)(?::(?P<rule>[\w.-]+))?$")


class SortKey(univ.Sequence):
    """
    SortKey is a sequence of attributeType, orderingRule, and reverseOrder.

    See RFC 2891 for more details.
    """

    componentType: ClassVar[namedtype.NamedTypes] = namedtype.NamedTypes(  # noqa: N815
        namedtype.NamedType("attributeType", univ.OctetString()),
        namedtype.OptionalNamedType(
            "orderingRule",
            univ.OctetString().subtype(
                implicitTag=tag.Tag(tag.tagClassContext, tag.tagFormatSimple, 0)
            ),
        ),
        namedtype.DefaultedNamedType(
            "reverseOrder",
            univ.Boolean(False).subtype(  # noqa: FBT003
                implicitTag=tag.Tag(tag.tagClassContext, tag.tagFormatSimple, 1)
            ),
        ),
    )


class SortKeyList(univ.SequenceOf):
    """
    A sequence of SortKeys.

    See RFC 2891 for more details.
    """

    componentType: ClassVar[SortKey] = SortKey()  # noqa: N815


def parse_sort_keys(spec: str) -> list[tuple[str, str | None, bool]]:
    """
    Parse a sort key list.

    Keys are separated by commas or spaces.  Each key is ``attribute``,
    optionally prefixed with ``-`` for descending order and suffixed with
    ``:orderingRule``.

    Args:
        spec: the key list, e.g. ``"-createTimestamp,cn:caseIgnoreOrderingMatch"``

    Raises:
        FilterError: a key is malformed or the list is empty

    Returns:
        A list of ``(attribute, ordering_rule, reverse)`` tuples.

    """
    keys = []
    for item in re.split(r"[,\s]+", spec.strip()):
        if not item:
            continue
        match = SORT_KEY_RE.match(item)
        if not match:
            msg = f"Invalid sort key {item!r} in {spec!r}"
            raise FilterError(msg)
        keys.append(
            (match.group("attribute"), match.group("rule"), bool(match.group("reverse")))
        )
    if not keys:
        msg = f"Empty sort key list {spec!r}"
        raise FilterError(msg)
    return keys


def build_sort_control_value(sort_keys: Iterable[tuple[str, str | None, bool]]) -> bytes:
    """
    Build the BER-encoded control value for server-side sorting.

    Args:
        sort_keys: ``(attribute, ordering_rule, reverse)`` tuples, as returned by
            :py:func:`parse_sort_keys`

    Returns:
        BER-encoded control value.

    """
    sort_key_list = SortKeyList()
    for attribute, rule, reverse in sort_keys:
        sort_key = SortKey()
        sort_key.setComponentByName("attributeType", attribute.encode("utf-8"))
        if rule:
            sort_key.setComponentByName("orderingRule", rule.encode("utf-8"))
        if reverse:
            sort_key.setComponentByName("reverseOrder", True)  # noqa: FBT003
        sort_key_list.append(sort_key)
    return encoder.encode(sort_key_list)


class ServerSideSortControl(LDAPControl):
    """
    LDAP Control Extension for Server-Side Sorting (RFC 2891).

    Args:
        criticality: whether the server must refuse the search if it cannot sort
        sort_keys: the key list, as a string or as parsed tuples

    """

    control_type = "1.2.840.113556.1.4.473"

    def __init__(
        self,
        criticality: bool = False,
        sort_keys: str | list[tuple[str, str | None, bool]] | None = None,
    ) -> None:
        if isinstance(sort_keys, str):
            sort_keys = parse_sort_keys(sort_keys)
        self.sort_keys = sort_keys or []
        value = build_sort_control_value(self.sort_keys)
        super().__init__(
            self.control_type, criticality, controlValue=value, encodedControlValue=value
        )


def parse_url_extensions(extensions: Iterable[tuple[bool, str, str | None]]) -> list[LDAPControl]:
    """
    Convert LDAP URL extensions into server controls.

    Only ``sss=<keys>`` (server side sort) is understood.  A critical
    extension (written ``!sss=...``) becomes a critical control.  Unknown
    extensions are logged and ignored.

    Args:
        extensions: ``(critical, type, value)`` tuples

    Raises:
        FilterError: an ``sss`` extension has no keys or malformed keys

    Returns:
        The controls to send with the search.

    """
    controls: list[LDAPControl] = []
    for critical, extype, exvalue in extensions:
        if extype.lower() == "sss":
            if not exvalue:
                msg = "Sort extension (sss) requires a key list"
                raise FilterError(msg)
            controls.append(ServerSideSortControl(critical, exvalue))
        else:
            logger.warning("query.extension.ignored type=%s critical=%s", extype, critical)
    return controls
