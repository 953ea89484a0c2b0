"""
Configuration.

An ldapaaa instance is configured by one entry in the ``LDAP_AAA`` Django
setting::

    LDAP_AAA = {
        "default": {
            "server": ["ldap1.example.com", "ldaps://ldap2.example.com"],
            "identity": "cn=radius,ou=services,dc=example,dc=com",
            "password": "secret",
            "update": [
                "control:Password-With-Header += 'userPassword'",
                "reply:Reply-Message := 'radiusReplyMessage'",
            ],
            "user": {
                "base_dn": "ou=people,dc=example,dc=com",
                "filter": "(uid=%{username})",
            },
            "group": {
                "base_dn": "ou=groups,dc=example,dc=com",
                "filter": "(objectClass=groupOfNames)",
                "membership_filter": "(member=%{control:LDAP-UserDN})",
                "cacheable_name": True,
            },
        },
    }

:py:class:`Options` parses and validates such a dictionary and raises
``ImproperlyConfigured`` for anything it cannot use.
"""

from pathlib import Path
from typing import TYPE_CHECKING, Any

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from . import ldap
from .controls import ServerSideSortControl
from .exceptions import FilterError
from .maps import MappingRule
from .modify import UpdateRule

if TYPE_CHECKING:
    from .attributes import Request

#: Search scope names.
SCOPES: dict[str, int] = {
    "base": ldap.SCOPE_BASE,  # type: ignore[attr-defined]
    "one": ldap.SCOPE_ONELEVEL,  # type: ignore[attr-defined]
    "sub": ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
    "children": ldap.SCOPE_SUBORDINATE,  # type: ignore[attr-defined]
}

#: Alias dereferencing policies.
DEREF: dict[str, int] = {
    "never": ldap.DEREF_NEVER,  # type: ignore[attr-defined]
    "searching": ldap.DEREF_SEARCHING,  # type: ignore[attr-defined]
    "finding": ldap.DEREF_FINDING,  # type: ignore[attr-defined]
    "always": ldap.DEREF_ALWAYS,  # type: ignore[attr-defined]
}

#: TLS certificate checking policies.
REQUIRE_CERT: dict[str, int] = {
    "never": ldap.OPT_X_TLS_NEVER,  # type: ignore[attr-defined]
    "allow": ldap.OPT_X_TLS_ALLOW,  # type: ignore[attr-defined]
    "try": ldap.OPT_X_TLS_TRY,  # type: ignore[attr-defined]
    "demand": ldap.OPT_X_TLS_DEMAND,  # type: ignore[attr-defined]
    "hard": ldap.OPT_X_TLS_HARD,  # type: ignore[attr-defined]
}

#: Largest number of attributes in an attribute map, and of modifications in
#: an update section.
MAX_ATTRMAP = 128

#: The top level keys of an instance configuration.
DEFAULT_NAMES = (
    "server",
    "port",
    "identity",
    "password",
    "sasl",
    "valuepair_attribute",
    "update",
    "max_attrmap",
    "read_clients",
    "user",
    "group",
    "profile",
    "client",
    "accounting",
    "post-auth",
    "options",
    "tls",
    "pool",
)


def _section(config: dict[str, Any], key: str) -> dict[str, Any]:
    value = config.get(key) or {}
    if not isinstance(value, dict):
        msg = f"LDAP_AAA: '{key}' must be a dictionary"
        raise ImproperlyConfigured(msg)
    return value


def _scope(config: dict[str, Any], section: str, default: str = "sub") -> int:
    name = config.get("scope", default)
    if name not in SCOPES:
        msg = (
            f"LDAP_AAA: invalid {section}.scope {name!r}, "
            f"expected one of {', '.join(SCOPES)}"
        )
        raise ImproperlyConfigured(msg)
    return SCOPES[name]


class SaslOptions:
    """
    SASL bind parameters.  Every field is a template expanded against the
    request before a user bind.
    """

    def __init__(self, config: dict[str, Any]) -> None:
        #: The SASL mechanism, e.g. ``DIGEST-MD5``.  No mechanism means a simple
        #: bind.
        self.mech: str | None = config.get("mech")
        #: The identity to proxy (authorize) as.
        self.proxy: str | None = config.get("proxy")
        #: The SASL realm.
        self.realm: str | None = config.get("realm")

    def __bool__(self) -> bool:
        return bool(self.mech)

    def expand(self, request: "Request") -> "SaslOptions":
        """
        Return a copy with every template expanded against ``request``.
        """
        from .filters import Expander

        expander = Expander(request, max_length=None)
        return SaslOptions(
            {
                key: expander.expand(value) if value else value
                for key, value in (
                    ("mech", self.mech),
                    ("proxy", self.proxy),
                    ("realm", self.realm),
                )
            }
        )


class UserOptions:
    def __init__(self, config: dict[str, Any]) -> None:
        #: Template for the base DN of user searches.
        self.base_dn: str = config.get("base_dn", "")
        #: Template for the user filter, e.g. ``(uid=%{username})``.
        self.filter: str | None = config.get("filter")
        self.scope: int = _scope(config, "user")
        #: Server side sort keys for the user search.
        self.sort_by: str | None = config.get("sort_by")
        self.sort_control: ServerSideSortControl | None = None
        if self.sort_by:
            try:
                # The sort control is critical: if the server cannot sort, the
                # search must fail rather than return unordered results.
                self.sort_control = ServerSideSortControl(True, self.sort_by)  # noqa: FBT003
            except FilterError as e:
                msg = f"LDAP_AAA: invalid user.sort_by: {e}"
                raise ImproperlyConfigured(msg) from e
        #: Attribute that enables or disables the account.
        self.access_attribute: str | None = config.get("access_attribute")
        #: If ``True``, the account is enabled only when ``access_attribute`` is
        #: present and not ``false``.  If ``False``, the account is disabled when
        #: the attribute is present with any value other than ``false``.
        self.access_positive: bool = config.get("access_positive", True)
        #: SASL parameters for binding as the user in ``authenticate``.
        self.sasl = SaslOptions(_section(config, "sasl"))


class GroupOptions:
    def __init__(self, config: dict[str, Any]) -> None:
        self.base_dn: str = config.get("base_dn", "")
        #: Filter selecting group objects.
        self.filter: str | None = config.get("filter")
        self.scope: int = _scope(config, "group")
        #: Attribute holding the group's name.
        self.name_attribute: str = config.get("name_attribute", "cn")
        #: Attribute on the user entry listing the user's groups, as names or
        #: DNs.
        self.membership_attribute: str | None = config.get("membership_attribute")
        #: Template for a filter matching the group objects that contain the
        #: user, e.g. ``(member=%{control:LDAP-UserDN})``.
        self.membership_filter: str | None = config.get("membership_filter")
        #: Cache the names of the user's groups during authorize.
        self.cacheable_name: bool = config.get("cacheable_name", False)
        #: Cache the DNs of the user's groups during authorize.
        self.cacheable_dn: bool = config.get("cacheable_dn", False)
        #: Control attribute that receives the cached group names and DNs.
        self.cache_attribute: str = config.get(
            "cache_attribute", "LDAP-Cached-Membership"
        )
        #: Name of the comparison attribute the host routes to
        #: :py:meth:`~ldapaaa.module.LdapModule.is_member`.
        self.group_attribute: str = config.get("group_attribute", "LDAP-Group")
        if self.cacheable_name and self.membership_filter and not self.name_attribute:
            msg = (
                "LDAP_AAA: group.cacheable_name with group.membership_filter "
                "requires group.name_attribute"
            )
            raise ImproperlyConfigured(msg)

    @property
    def caching(self) -> bool:
        return self.cacheable_name or self.cacheable_dn


class ProfileOptions:
    def __init__(self, config: dict[str, Any]) -> None:
        #: Template for the filter applied to each profile entry.
        self.filter: str = config.get("filter", "(&)")
        #: Attribute on the user entry listing profile DNs.
        self.attribute: str | None = config.get("attribute")
        #: Template for the DN of the profile applied to every user.
        self.default: str | None = config.get("default")


class ClientOptions:
    def __init__(self, config: dict[str, Any]) -> None:
        self.base_dn: str = config.get("base_dn", "")
        self.filter: str | None = config.get("filter")
        self.scope: int = _scope(config, "client")
        #: Client field name to LDAP attribute.
        self.attribute: dict[str, str] = _section(config, "attribute")


class UpdateSection:
    """
    An accounting or post-auth update section.

    A section can hold an ``update`` list of its own and any number of named
    subsections.  ``reference`` (a template, default ``"."``) selects the
    section whose ``update`` list is used for a given request: ``"."`` is the
    section itself, ``".start"`` its subsection ``start``, ``".type.start"``
    the subsection ``start`` of subsection ``type``.  Names are matched case
    insensitively.

    Args:
        name: the name of this section
        config: the section's dictionary

    """

    def __init__(self, name: str, config: dict[str, Any]) -> None:
        self.name = name
        self.reference: str = config.get("reference", ".")
        self.rules: list[UpdateRule] | None = None
        if "update" in config:
            try:
                self.rules = [UpdateRule.parse(rule) for rule in config["update"]]
            except ValueError as e:
                msg = f"LDAP_AAA: {name}: {e}"
                raise ImproperlyConfigured(msg) from e
        self.subsections: dict[str, UpdateSection] = {
            key.lower(): UpdateSection(f"{name}.{key}", value)
            for key, value in config.items()
            if isinstance(value, dict)
        }

    def resolve(self, reference: str) -> "UpdateSection | None":
        """
        Return the section named by ``reference``, relative to this one, or
        ``None`` if there is no such section.
        """
        section: UpdateSection | None = self
        for part in reference.strip().lstrip(".").split("."):
            if not part:
                continue
            section = section.subsections.get(part.lower()) if section else None
        return section


class ConnectionOptions:
    def __init__(self, config: dict[str, Any]) -> None:
        #: Follow referrals returned by the server.
        self.chase_referrals: bool = config.get("chase_referrals", False)
        #: Seconds to wait for a TCP connection.
        self.net_timeout: float = float(config.get("net_timeout", 10))
        #: Seconds to wait for the result of a search.
        self.res_timeout: float = float(config.get("res_timeout", 20))
        #: Seconds the server may spend on a search.
        self.srv_timelimit: int = int(config.get("srv_timelimit", 20))
        #: TCP keepalive: idle seconds, probe count and probe interval.
        self.idle: int = int(config.get("idle", 60))
        self.probes: int = int(config.get("probes", 3))
        self.interval: int = int(config.get("interval", 30))
        dereference = config.get("dereference", "never")
        if dereference not in DEREF:
            msg = f"LDAP_AAA: invalid options.dereference {dereference!r}"
            raise ImproperlyConfigured(msg)
        self.dereference: int = DEREF[dereference]
        #: libldap debug level, set once by the client library context.
        self.ldap_debug: int = int(config.get("ldap_debug", 0))


class TLSOptions:
    def __init__(self, config: dict[str, Any]) -> None:
        self.start_tls: bool = config.get("start_tls", False)
        require_cert = config.get("require_cert", "demand")
        if require_cert not in REQUIRE_CERT:
            msg = f"LDAP_AAA: invalid tls.require_cert {require_cert!r}"
            raise ImproperlyConfigured(msg)
        self.require_cert: int = REQUIRE_CERT[require_cert]
        self.ca_file: str | None = self._path(config, "ca_file")
        self.ca_path: str | None = self._path(config, "ca_path", directory=True)
        self.certificate_file: str | None = self._path(config, "certificate_file")
        self.private_key_file: str | None = self._path(config, "private_key_file")
        self.random_file: str | None = self._path(config, "random_file")

    def _path(
        self, config: dict[str, Any], key: str, directory: bool = False
    ) -> str | None:
        value = config.get(key)
        if not value:
            return None
        path = Path(value)
        if not path.exists():
            msg = f"LDAP_AAA: tls.{key} does not exist: {value}"
            raise ImproperlyConfigured(msg)
        if directory and not path.is_dir():
            msg = f"LDAP_AAA: tls.{key} is not a directory: {value}"
            raise ImproperlyConfigured(msg)
        if not directory and not path.is_file():
            msg = f"LDAP_AAA: tls.{key} is not a file: {value}"
            raise ImproperlyConfigured(msg)
        return value


class PoolOptions:
    def __init__(self, config: dict[str, Any]) -> None:
        #: Connections opened when the module starts.
        self.start: int = int(config.get("start", 0))
        #: Most connections open at once.
        self.max: int = int(config.get("max", 10))
        #: Seconds to wait for a free connection.
        self.timeout: float = float(config.get("timeout", 10))
        if self.max < 1 or self.start > self.max:
            msg = "LDAP_AAA: pool.max must be at least 1 and not less than pool.start"
            raise ImproperlyConfigured(msg)


class Options:
    """
    The parsed configuration of one ldapaaa instance.

    Args:
        name: the key into ``settings.LDAP_AAA``

    Keyword Args:
        config: use this dictionary instead of reading ``settings.LDAP_AAA``

    Raises:
        ImproperlyConfigured: the configuration is missing or invalid

    """

    def __init__(self, name: str = "default", config: dict[str, Any] | None = None) -> None:
        if config is None:
            config = self._get_config(name)
        #: The key into ``settings.LDAP_AAA``; used in log messages.
        self.name = name
        unknown = set(config) - set(DEFAULT_NAMES)
        if unknown:
            msg = f"LDAP_AAA[{name!r}]: unknown settings {', '.join(sorted(unknown))}"
            raise ImproperlyConfigured(msg)

        #: Default port for servers given without one.
        self.port: int | None = config.get("port")
        #: ``ldap://`` / ``ldaps://`` / ``ldapi://`` URIs to connect to, in order.
        self.servers: list[str] = self._parse_servers(config.get("server"))
        #: The administrative identity connections are bound as.
        self.identity: str = config.get("identity", "")
        self.password: str = config.get("password", "")
        #: Static SASL parameters for the administrative bind.
        self.sasl = SaslOptions(_section(config, "sasl"))
        #: Attribute on user and profile entries holding ``Attr op value``
        #: strings that are applied to the request as they are.
        self.valuepair_attribute: str | None = config.get("valuepair_attribute")
        self.max_attrmap: int = int(config.get("max_attrmap", MAX_ATTRMAP))
        #: Load clients from the directory when the module starts.
        self.read_clients: bool = config.get("read_clients", False)

        self.user = UserOptions(_section(config, "user"))
        self.group = GroupOptions(_section(config, "group"))
        self.profile = ProfileOptions(_section(config, "profile"))
        self.client = ClientOptions(_section(config, "client"))
        self.connection = ConnectionOptions(_section(config, "options"))
        self.tls = TLSOptions(_section(config, "tls"))
        if self.tls.start_tls and any(s.startswith("ldaps://") for s in self.servers):
            msg = "LDAP_AAA: tls.start_tls cannot be used with ldaps:// servers"
            raise ImproperlyConfigured(msg)
        self.pool = PoolOptions(_section(config, "pool"))
        self.accounting: UpdateSection | None = None
        if "accounting" in config:
            self.accounting = UpdateSection("accounting", _section(config, "accounting"))
        self.post_auth: UpdateSection | None = None
        if "post-auth" in config:
            self.post_auth = UpdateSection("post-auth", _section(config, "post-auth"))

        #: The attribute map applied to user and profile entries.
        try:
            self.update: list[MappingRule] = [
                MappingRule.parse(rule) for rule in config.get("update", [])
            ]
        except ValueError as e:
            msg = f"LDAP_AAA[{name!r}]: {e}"
            raise ImproperlyConfigured(msg) from e
        if len(self.update) + len(self.synthetic_attributes()) > self.max_attrmap:
            msg = (
                f"LDAP_AAA[{name!r}]: the attribute map needs more than "
                f"max_attrmap ({self.max_attrmap}) attributes"
            )
            raise ImproperlyConfigured(msg)
        for section in (self.accounting, self.post_auth):
            self._check_update_section(section)

    def _get_config(self, name: str) -> dict[str, Any]:
        try:
            return settings.LDAP_AAA[name]
        except AttributeError as e:
            msg = "settings.LDAP_AAA is not defined"
            raise ImproperlyConfigured(msg) from e
        except KeyError as e:
            msg = f"settings.LDAP_AAA has no {name!r} entry"
            raise ImproperlyConfigured(msg) from e

    def _parse_servers(self, value: str | list[str] | None) -> list[str]:
        if not value:
            msg = "LDAP_AAA: 'server' is required"
            raise ImproperlyConfigured(msg)
        if isinstance(value, str):
            value = [value]
        servers = []
        for server in value:
            if any(c in server for c in " ,;"):
                msg = (
                    f"LDAP_AAA: invalid server {server!r}: list servers separately "
                    "rather than with spaces, commas or semicolons"
                )
                raise ImproperlyConfigured(msg)
            if "://" in server:
                if not server.startswith(("ldap://", "ldaps://", "ldapi://")):
                    msg = f"LDAP_AAA: unsupported server URI {server!r}"
                    raise ImproperlyConfigured(msg)
                servers.append(server)
            elif self.port and ":" not in server:
                servers.append(f"ldap://{server}:{self.port}")
            else:
                servers.append(f"ldap://{server}")
        return servers

    def _check_update_section(self, section: UpdateSection | None) -> None:
        if section is None:
            return
        if section.rules and len(section.rules) > self.max_attrmap:
            msg = (
                f"LDAP_AAA: {section.name} has more than max_attrmap "
                f"({self.max_attrmap}) update rules"
            )
            raise ImproperlyConfigured(msg)
        for subsection in section.subsections.values():
            self._check_update_section(subsection)

    @property
    def uri(self) -> str:
        """
        The space separated URI list handed to ``ldap.initialize``.
        """
        return " ".join(self.servers)

    def synthetic_attributes(self) -> list[str]:
        """
        The attributes fetched with every user entry on top of the attribute
        map, in this order: the access attribute, the membership attribute
        (only when group caching is on), the profile attribute and the value
        pair attribute.
        """
        candidates = [
            self.user.access_attribute,
            self.group.membership_attribute if self.group.caching else None,
            self.profile.attribute,
            self.valuepair_attribute,
        ]
        return [attr for attr in candidates if attr]
