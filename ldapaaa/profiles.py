"""
Profiles: directory entries whose attributes are mapped onto every user that
references them.
"""

import logging
from typing import TYPE_CHECKING

from . import ldap
from .codes import LDAPResult, RCode
from .exceptions import FilterError
from .filters import Expander, escape, join_filters

if TYPE_CHECKING:
    from .attributes import Request
    from .maps import AttributeMapper, ExpandedMap
    from .options import Options
    from .pool import ConnectionHandle, ConnectionPool
    from .typing import LDAPEntry

logger = logging.getLogger(__name__)


class ProfileResolver:
    """
    Applies the default profile and the user's own profiles.

    Args:
        options: the instance configuration
        pool: the connection pool
        mapper: the attribute mapper applied to each profile entry

    """

    def __init__(
        self, options: "Options", pool: "ConnectionPool", mapper: "AttributeMapper"
    ) -> None:
        self.options = options
        self.pool = pool
        self.mapper = mapper

    def profile_dns(self, request: "Request", entry: "LDAPEntry") -> list[str]:
        """
        Return the profile DNs for a user, default profile first, then the
        values of ``profile.attribute`` in directory order.

        Raises:
            FilterError: the default profile template could not be expanded

        """
        profile = self.options.profile
        dns = []
        if profile.default:
            default = Expander(request, escape=escape).expand(profile.default)
            if default:
                dns.append(default)
        if profile.attribute:
            values = {key.lower(): v for key, v in entry.items()}.get(
                profile.attribute.lower(), []
            )
            dns.extend(v.decode("utf-8", errors="replace") for v in values)
        return dns

    def apply_profiles(
        self,
        handle: "ConnectionHandle",
        request: "Request",
        expanded: "ExpandedMap",
        entry: "LDAPEntry",
    ) -> RCode:
        """
        Apply every profile of the user to ``request``.

        A profile that does not exist is logged and skipped.  Any other
        failure stops processing.

        Returns:
            ``UPDATED`` if any profile applied attributes, ``OK`` if none did,
            ``INVALID`` or ``FAIL`` if a profile could not be processed.

        """
        try:
            dns = self.profile_dns(request, entry)
        except FilterError as e:
            logger.error("profile.default.invalid error=%s", e)
            return RCode.INVALID
        updated = False
        for dn in dns:
            rcode = self.map_profile(handle, request, dn, expanded)
            if rcode in (RCode.FAIL, RCode.INVALID):
                return rcode
            if rcode is RCode.UPDATED:
                updated = True
        return RCode.UPDATED if updated else RCode.OK

    def map_profile(
        self,
        handle: "ConnectionHandle",
        request: "Request",
        dn: str,
        expanded: "ExpandedMap",
    ) -> RCode:
        """
        Read the profile at ``dn`` and apply the attribute map to it.

        Returns:
            ``UPDATED`` if values were applied, ``OK`` if none were,
            ``NOTFOUND`` if the profile does not exist, ``INVALID`` if the
            profile filter could not be built, ``FAIL`` if the search failed.

        """
        if not dn:
            return RCode.OK
        try:
            filterstr = join_filters(
                Expander(request, escape=escape).expand(self.options.profile.filter)
            )
        except FilterError as e:
            logger.error("profile.filter.invalid dn=%s error=%s", dn, e)
            return RCode.INVALID
        result = self.pool.search(
            handle,
            dn,
            ldap.SCOPE_BASE,  # type: ignore[attr-defined]
            filterstr,
            list(expanded.attributes) or None,
        )
        if result.status in (LDAPResult.NO_RESULT, LDAPResult.BAD_DN):
            logger.warning("profile.not_found dn=%s", dn)
            return RCode.NOTFOUND
        if not result:
            return RCode.FAIL
        profile_dn, profile_entry = result.entries[0]
        applied = self.mapper.apply(expanded, profile_dn, profile_entry, request)
        logger.debug("profile.applied dn=%s count=%d", profile_dn, applied)
        return RCode.UPDATED if applied else RCode.OK
