"""
The attribute map: which directory attributes end up in which request
attributes.

A mapping rule is written like a RADIUS update statement::

    "reply:Reply-Message := 'radiusReplyMessage'"
    "control:Password-With-Header += userPassword"
    "reply:Filter-Id := \"%{control:Filter-Attribute}\""

The right hand side names the LDAP attribute to read.  Bare and single
quoted names are used as they are; a double quoted right hand side is a
template expanded against the request to get the attribute name.  A rule can
also be given as a dictionary::

    {"attribute": "Reply-Message", "op": ":=", "source": "radiusReplyMessage",
     "list": "reply", "expand": True}

``expand`` makes the values read from the directory templates themselves,
expanded against the request before they are applied.
"""

import logging
import re
from collections.abc import Iterator
from typing import TYPE_CHECKING, Any

from .attributes import LIST_NAMES, OPERATORS, parse_pair
from .exceptions import AttributeMapOverflow
from .filters import Expander

if TYPE_CHECKING:
    from .attributes import Request
    from .typing import LDAPEntry

logger = logging.getLogger(__name__)

#: The virtual attribute that yields the entry's own DN.
DN_ATTRIBUTE = "dn"

RULE_RE = re.compile(
    r"^\s*(?:(?P<list>[A-Za-z]+):)?(?P<attribute>[\w.-]+)\s*"
    r"(?P<op>\+=|:=|==|!=|-=|=)\s*(?P<source>.+?)\s*$"
)


class MappingRule:
    """
    One attribute map rule.

    Args:
        attribute: the request attribute to write
        operator: the assignment operator
        source: the LDAP attribute to read, or a template producing its name

    Keyword Args:
        list_name: the request list ``attribute`` lives in
        templated: ``source`` is a template
        expand_values: the fetched values are templates

    Raises:
        ValueError: the operator or list is unknown

    """

    def __init__(
        self,
        attribute: str,
        operator: str,
        source: str,
        list_name: str = "reply",
        templated: bool = False,
        expand_values: bool = False,
    ) -> None:
        if operator not in OPERATORS:
            msg = f"Unknown operator {operator!r} in mapping for {attribute}"
            raise ValueError(msg)
        if list_name.lower() not in LIST_NAMES:
            msg = f"Unknown attribute list {list_name!r} in mapping for {attribute}"
            raise ValueError(msg)
        self.attribute = attribute
        self.operator = operator
        self.source = source
        self.list_name = list_name.lower()
        self.templated = templated
        self.expand_values = expand_values

    def __repr__(self) -> str:
        return (
            f"<MappingRule {self.list_name}:{self.attribute} {self.operator} "
            f"{self.source!r}>"
        )

    @classmethod
    def parse(cls, rule: "str | dict[str, Any] | MappingRule") -> "MappingRule":
        """
        Build a rule from its string or dictionary form.

        Raises:
            ValueError: the rule cannot be parsed

        """
        if isinstance(rule, MappingRule):
            return rule
        if isinstance(rule, dict):
            try:
                return cls(
                    rule["attribute"],
                    rule.get("op", ":="),
                    rule["source"],
                    list_name=rule.get("list", "reply"),
                    templated=rule.get("templated", False),
                    expand_values=rule.get("expand", False),
                )
            except KeyError as e:
                msg = f"Mapping rule {rule!r} is missing {e}"
                raise ValueError(msg) from e
        match = RULE_RE.match(rule)
        if not match:
            msg = f"Invalid mapping rule {rule!r}"
            raise ValueError(msg)
        source = match.group("source")
        templated = False
        if len(source) >= 2 and source[0] == source[-1] and source[0] in "'\"":  # noqa: PLR2004
            templated = source[0] == '"'
            source = source[1:-1]
        if not source:
            msg = f"Mapping rule {rule!r} has no source attribute"
            raise ValueError(msg)
        return cls(
            match.group("attribute"),
            match.group("op"),
            source,
            list_name=match.group("list") or "reply",
            templated=templated,
        )


class ExpandedMap:
    """
    The attribute names one authorize or query call asks the directory for.

    Holds the literal LDAP attribute names produced by expanding the mapping
    rules, followed by any extra attributes the caller needs, in order.  It can
    never hold more than ``capacity`` names.  Use it as a context manager to
    release it at the end of the call.

    Args:
        capacity: most attribute names the map may hold

    """

    def __init__(self, capacity: int) -> None:
        self.capacity = capacity
        #: The attribute names, in order.
        self.attributes: list[str] = []
        #: The rule each name came from; ``None`` for extra attributes.
        self.rules: list[MappingRule | None] = []

    def __len__(self) -> int:
        return len(self.attributes)

    def __iter__(self) -> Iterator[tuple[str, MappingRule | None]]:
        return iter(zip(self.attributes, self.rules, strict=True))

    def __enter__(self) -> "ExpandedMap":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    @property
    def count(self) -> int:
        return len(self.attributes)

    def append(self, attribute: str, rule: MappingRule | None = None) -> None:
        """
        Add ``attribute`` to the map.

        Raises:
            AttributeMapOverflow: the map is full

        """
        if len(self.attributes) >= self.capacity:
            raise AttributeMapOverflow(self.capacity)
        self.attributes.append(attribute)
        self.rules.append(rule)

    def close(self) -> None:
        self.attributes.clear()
        self.rules.clear()


class AttributeMapper:
    """
    Expands a list of :py:class:`MappingRule` objects and applies them to
    directory entries.

    Args:
        rules: the mapping rules, in order
        capacity: most attributes an expanded map may hold

    Keyword Args:
        valuepair_attribute: LDAP attribute whose values are
            ``[list:]Attr op value`` strings applied to the request as they are

    """

    def __init__(
        self,
        rules: list[MappingRule],
        capacity: int,
        valuepair_attribute: str | None = None,
    ) -> None:
        self.rules = rules
        self.capacity = capacity
        self.valuepair_attribute = valuepair_attribute

    def expand(self, request: "Request", extra: list[str] | None = None) -> ExpandedMap:
        """
        Expand every rule's source into a literal attribute name, then append
        ``extra``.

        A templated source that expands to nothing is skipped.

        Args:
            request: the request templates are expanded against
            extra: attribute names to fetch in addition to the mapped ones

        Raises:
            AttributeMapOverflow: more than ``capacity`` attributes
            FilterError: a template could not be expanded

        Returns:
            The expanded map.

        """
        expanded = ExpandedMap(self.capacity)
        expander = Expander(request, max_length=None)
        for rule in self.rules:
            name = expander.expand(rule.source) if rule.templated else rule.source
            if not name:
                logger.debug("map.expand.empty source=%s", rule.source)
                continue
            expanded.append(name, rule)
        for name in extra or []:
            expanded.append(name)
        return expanded

    def apply(
        self, expanded: ExpandedMap, dn: str, entry: "LDAPEntry", request: "Request"
    ) -> int:
        """
        Apply the values of ``entry`` to ``request``.

        Attribute names are matched case insensitively.  The virtual attribute
        ``dn`` yields ``dn``.  A rule whose attribute the entry lacks applies
        nothing and does not stop the rules after it.

        Args:
            expanded: the map returned by :py:meth:`expand`
            dn: the DN of ``entry``
            entry: the entry's attributes
            request: the request to update

        Returns:
            The number of values applied.

        """
        attrs = {key.lower(): values for key, values in entry.items()}
        applied = 0
        for name, rule in expanded:
            if rule is None:
                continue
            if name.lower() == DN_ATTRIBUTE:
                values = [dn]
            else:
                values = [self._decode(v) for v in attrs.get(name.lower(), [])]
            if not values:
                logger.debug("map.apply.missing attribute=%s dn=%s", name, dn)
                continue
            if rule.expand_values:
                expander = Expander(request, max_length=None)
                values = [expander.expand(value) for value in values]
            applied += request.get_list(rule.list_name).apply(
                rule.attribute, rule.operator, values
            )
        if self.valuepair_attribute:
            applied += self.apply_valuepairs(
                attrs.get(self.valuepair_attribute.lower(), []), dn, request
            )
        return applied

    def apply_valuepairs(self, raw: list[bytes], dn: str, request: "Request") -> int:
        applied = 0
        for value in raw:
            try:
                pair = parse_pair(self._decode(value))
            except ValueError as e:
                logger.warning("map.valuepair.invalid dn=%s error=%s", dn, e)
                continue
            applied += request.get_list(pair.list_name).apply(
                pair.attribute, pair.operator, [pair.value]
            )
        return applied

    def _decode(self, value: bytes | str) -> str:
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        return value
