"""
Write-back of accounting and post-auth data to the user's entry.
"""

import logging
import re
from typing import TYPE_CHECKING, Any

from . import ldap
from .codes import LDAPResult, RCode
from .exceptions import ModifyListOverflow
from .filters import Expander

if TYPE_CHECKING:
    from .attributes import Request
    from .options import Options, UpdateSection
    from .pool import ConnectionPool
    from .typing import ModifyList
    from .users import UserResolver

logger = logging.getLogger(__name__)

#: Update operators and the ``modify_s`` operation each one becomes.
MOD_OPERATORS: dict[str, int] = {
    "+=": ldap.MOD_ADD,  # type: ignore[attr-defined]
    ":=": ldap.MOD_REPLACE,  # type: ignore[attr-defined]
    "-=": ldap.MOD_DELETE,  # type: ignore[attr-defined]
    "!*": ldap.MOD_DELETE,  # type: ignore[attr-defined]
    "++": ldap.MOD_INCREMENT,  # type: ignore[attr-defined]
}

UPDATE_RE = re.compile(
    r"^\s*(?P<attribute>[\w.;-]+)\s*(?P<op>\+=|:=|-=|!\*|\+\+|==|!=|=)\s*(?P<value>.*?)\s*$"
)


class UpdateRule:
    """
    One rule of an update section: ``attribute op value``.

    ``value`` is either literal or a template.  Single quoted and bare values
    are literal unless they contain a ``%{...}`` reference; double quoted and
    back quoted values are templates.

    Args:
        attribute: the LDAP attribute to modify
        operator: one of :py:data:`MOD_OPERATORS`
        value: the literal value or template

    Keyword Args:
        templated: ``value`` is expanded against the request

    Raises:
        ValueError: the operator is not supported.  Plain ``=`` is refused
            because an LDAP modify cannot set a value only if it is absent.

    """

    def __init__(
        self, attribute: str, operator: str, value: str = "", templated: bool = False
    ) -> None:
        if operator == "=":
            msg = (
                f"Operator '=' is not allowed for {attribute}: use ':=' to replace "
                "or '+=' to add"
            )
            raise ValueError(msg)
        if operator not in MOD_OPERATORS:
            msg = f"Operator {operator!r} is not supported for {attribute}"
            raise ValueError(msg)
        self.attribute = attribute
        self.operator = operator
        self.value = value
        self.templated = templated

    def __repr__(self) -> str:
        return f"<UpdateRule {self.attribute} {self.operator} {self.value!r}>"

    @property
    def modtype(self) -> int:
        return MOD_OPERATORS[self.operator]

    @classmethod
    def parse(cls, rule: "str | dict[str, Any] | UpdateRule") -> "UpdateRule":
        """
        Build a rule from its string or dictionary form.

        Raises:
            ValueError: the rule cannot be parsed

        """
        if isinstance(rule, UpdateRule):
            return rule
        if isinstance(rule, dict):
            try:
                attribute, operator = rule["attribute"], rule["op"]
            except KeyError as e:
                msg = f"Update rule {rule!r} is missing {e}"
                raise ValueError(msg) from e
            value = str(rule.get("value", ""))
            return cls(
                attribute,
                operator,
                value,
                templated=rule.get("templated", "%{" in value),
            )
        match = UPDATE_RE.match(rule)
        if not match:
            msg = f"Invalid update rule {rule!r}"
            raise ValueError(msg)
        value = match.group("value")
        templated = "%{" in value
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"`":  # noqa: PLR2004
            templated = value[0] != "'"
            value = value[1:-1]
        return cls(match.group("attribute"), match.group("op"), value, templated=templated)


class ModifyListBuilder:
    """
    Turns update rules into a ``modify_s`` modlist.

    Args:
        capacity: most operations one modlist may hold

    """

    def __init__(self, capacity: int) -> None:
        self.capacity = capacity

    def build(self, rules: list[UpdateRule], request: "Request") -> "ModifyList":
        """
        Build the modlist for ``rules``.

        Rules whose value is empty, or whose template expands to nothing, are
        skipped.  ``!*`` deletes the whole attribute and needs no value.

        Args:
            rules: the update rules, in order
            request: the request templates are expanded against

        Raises:
            ModifyListOverflow: more than ``capacity`` operations
            FilterError: a template could not be expanded

        Returns:
            The modlist, possibly empty.

        """
        modlist: ModifyList = []
        expander = Expander(request, max_length=None)
        for rule in rules:
            if rule.operator == "!*":
                values = None
            else:
                value = expander.expand(rule.value) if rule.templated else rule.value
                if not value:
                    logger.debug("modify.skip attribute=%s op=%s", rule.attribute, rule.operator)
                    continue
                values = [value.encode("utf-8")]
            if len(modlist) >= self.capacity:
                raise ModifyListOverflow(self.capacity)
            modlist.append((rule.modtype, rule.attribute, values))
        return modlist


class UserModifier:
    """
    Applies an update section to the entry of the request's user.

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
        self.builder = ModifyListBuilder(options.max_attrmap)

    def modify(self, request: "Request", section: "UpdateSection") -> RCode:
        """
        Modify the user's entry with the update rules selected by
        ``section.reference``.

        Returns:
            ``NOOP`` if there was nothing to write, ``OK`` if the entry was
            modified, ``INVALID`` if the section or the user could not be
            resolved or the server refused the DN, ``FAIL`` otherwise.

        """
        reference = Expander(request, max_length=None).expand(section.reference)
        target = section.resolve(reference)
        if target is None:
            logger.warning(
                "modify.no_section section=%s reference=%s", section.name, reference
            )
            return RCode.INVALID
        if target.rules is None:
            logger.warning("modify.no_update section=%s", target.name)
            return RCode.INVALID
        modlist = self.builder.build(target.rules, request)
        if not modlist:
            logger.debug("modify.noop section=%s", target.name)
            return RCode.NOOP
        with self.pool.connection() as handle:
            user = self.users.find_user(handle, request)
            if user.rcode is not RCode.OK:
                return RCode.INVALID
            result = self.pool.modify(handle, user.dn, modlist)
        if result is LDAPResult.SUCCESS:
            logger.info("modify.success section=%s dn=%s", target.name, user.dn)
            return RCode.OK
        if result in (LDAPResult.REJECT, LDAPResult.BAD_DN):
            return RCode.INVALID
        return RCode.FAIL
