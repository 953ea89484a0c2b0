"""
The request side of a resolution: the identity being resolved and the
attribute lists it carries.

A :py:class:`Request` holds three :py:class:`AttributeList` objects, the
same three lists a RADIUS server keeps for every request:

* ``request``: attributes received from the client (``User-Name``,
  ``User-Password``, ...)
* ``reply``: attributes to send back
* ``control``: internal attributes (``LDAP-UserDN``, known good passwords, ...)

Hosts with their own attribute store can subclass :py:class:`Request` or
build one per request from their own data.
"""

import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .groups import MembershipCache

#: The names by which templates and mapping rules can address each list.
LIST_NAMES: dict[str, str] = {
    "request": "request",
    "reply": "reply",
    "control": "control",
    "config": "control",
}

#: Assignment operators understood by :py:meth:`AttributeList.apply`.
OPERATORS = ("+=", ":=", "==", "!=", "-=", "=")

PAIR_RE = re.compile(
    r"^\s*(?:(?P<list>[A-Za-z]+):)?(?P<attribute>[\w.-]+)\s*"
    r"(?P<op>\+=|:=|==|!=|-=|=)\s*(?P<value>.*?)\s*$"
)


@dataclass(frozen=True)
class Identity:
    """
    A username and an optional plaintext credential.
    """

    username: str
    password: str | None = None


class AttributeList:
    """
    An ordered, multi-valued attribute store with case-insensitive names.
    """

    def __init__(self, initial: dict[str, str | list[str]] | None = None) -> None:
        self._names: dict[str, str] = {}
        self._values: dict[str, list[str]] = {}
        if initial:
            for name, value in initial.items():
                values = value if isinstance(value, list) else [value]
                for v in values:
                    self.append(name, v)

    def _key(self, name: str) -> str:
        return name.lower()

    def __contains__(self, name: str) -> bool:
        return bool(self._values.get(self._key(name)))

    def __iter__(self) -> Iterator[str]:
        return iter(self._names[key] for key in self._values if self._values[key])

    def __len__(self) -> int:
        return sum(len(values) for values in self._values.values())

    def __repr__(self) -> str:
        return f"<AttributeList {self.as_dict()!r}>"

    def get(self, name: str, default: str | None = None) -> str | None:
        """
        Return the first value of ``name``, or ``default``.
        """
        values = self._values.get(self._key(name))
        if not values:
            return default
        return values[0]

    def get_all(self, name: str) -> list[str]:
        return list(self._values.get(self._key(name), []))

    def append(self, name: str, value: str) -> None:
        key = self._key(name)
        self._names.setdefault(key, name)
        self._values.setdefault(key, []).append(value)

    def set(self, name: str, values: str | list[str]) -> None:
        """
        Replace all values of ``name`` with ``values``.
        """
        if isinstance(values, str):
            values = [values]
        key = self._key(name)
        self._names[key] = name
        self._values[key] = list(values)

    def remove(self, name: str, value: str | None = None) -> None:
        """
        Remove ``value`` from ``name``, or every value if ``value`` is ``None``.
        """
        key = self._key(name)
        if value is None:
            self._values.pop(key, None)
            self._names.pop(key, None)
            return
        self._values[key] = [v for v in self._values.get(key, []) if v != value]

    def as_dict(self) -> dict[str, list[str]]:
        return {self._names[key]: list(v) for key, v in self._values.items() if v}

    def apply(self, name: str, operator: str, values: list[str]) -> int:
        """
        Apply ``values`` to ``name`` using a RADIUS style assignment operator.

        * ``:=`` replaces every existing value
        * ``+=`` appends
        * ``=`` sets the values only if the attribute is absent
        * ``-=`` and ``!=`` remove existing values that match any of ``values``
        * ``==`` keeps only existing values that match one of ``values``

        Args:
            name: the attribute to change
            operator: one of :py:data:`OPERATORS`
            values: the new values

        Raises:
            ValueError: ``operator`` is not a known operator

        Returns:
            The number of values that changed: added or replaced for ``:=``,
            ``+=`` and ``=``, removed for ``-=``, ``!=`` and ``==``.  ``0``
            means the list is as it was.

        """
        if not values:
            return 0
        existing = self.get_all(name)
        if operator == ":=":
            if existing == values:
                return 0
            self.set(name, values)
            return len(values)
        if operator == "+=":
            for value in values:
                self.append(name, value)
            return len(values)
        if operator == "=":
            if existing:
                return 0
            self.set(name, values)
            return len(values)
        if operator in ("-=", "!="):
            kept = [v for v in existing if v not in values]
        elif operator == "==":
            kept = [v for v in existing if v in values]
        else:
            msg = f"Unknown operator {operator!r}"
            raise ValueError(msg)
        if len(kept) != len(existing):
            self._values[self._key(name)] = kept
        return len(existing) - len(kept)


class Request:
    """
    One AAA request: three attribute lists and a request scoped membership
    cache.

    Args:
        packet: initial attributes of the request list
        reply: initial attributes of the reply list
        control: initial attributes of the control list

    """

    def __init__(
        self,
        packet: dict[str, str | list[str]] | None = None,
        reply: dict[str, str | list[str]] | None = None,
        control: dict[str, str | list[str]] | None = None,
    ) -> None:
        from .groups import MembershipCache

        self.request = AttributeList(packet)
        self.reply = AttributeList(reply)
        self.control = AttributeList(control)
        #: Group names and DNs known to contain the user.  Filled in once by
        #: :py:meth:`ldapaaa.module.LdapModule.authorize`.
        self.membership_cache: MembershipCache = MembershipCache()

    @classmethod
    def from_identity(cls, identity: Identity) -> "Request":
        packet: dict[str, str | list[str]] = {"User-Name": identity.username}
        if identity.password is not None:
            packet["User-Password"] = identity.password
        return cls(packet=packet)

    def get_list(self, name: str) -> AttributeList:
        """
        Return the attribute list called ``name``.

        Raises:
            KeyError: there is no list with that name

        """
        return getattr(self, LIST_NAMES[name.lower()])

    @property
    def username(self) -> str | None:
        return self.request.get("User-Name")

    @property
    def password(self) -> str | None:
        return self.request.get("User-Password")


@dataclass
class Pair:
    """
    One parsed ``[list:]Attribute op value`` string.
    """

    attribute: str
    operator: str
    value: str
    list_name: str = field(default="reply")


def parse_pair(text: str, default_list: str = "reply") -> Pair:
    """
    Parse a ``[list:]Attribute op value`` string, as stored in value-pair
    attributes in the directory.  Quotes around ``value`` are removed.

    Raises:
        ValueError: ``text`` is not a valid pair

    """
    match = PAIR_RE.match(text)
    if not match:
        msg = f"Invalid attribute pair {text!r}"
        raise ValueError(msg)
    list_name = (match.group("list") or default_list).lower()
    if list_name not in LIST_NAMES:
        msg = f"Unknown attribute list {list_name!r} in {text!r}"
        raise ValueError(msg)
    value = match.group("value")
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":  # noqa: PLR2004
        value = value[1:-1]
    return Pair(match.group("attribute"), match.group("op"), value, list_name)
