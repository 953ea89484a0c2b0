"""
Bulk loading of AAA clients (NAS definitions) from the directory.
"""

import logging
from typing import TYPE_CHECKING

from .codes import LDAPResult
from .exceptions import DirectorySearchError
from .filters import join_filters

if TYPE_CHECKING:
    from .options import Options
    from .pool import ConnectionPool

logger = logging.getLogger(__name__)

#: Client fields every loaded client must have.
REQUIRED_FIELDS = ("identifier", "secret")


class ClientLoader:
    """
    Reads client definitions from the directory.

    ``client.attribute`` maps client fields to LDAP attributes, e.g.
    ``{"identifier": "radiusClientIdentifier", "secret": "radiusClientSecret",
    "shortname": "radiusClientShortname"}``.

    Args:
        options: the instance configuration
        pool: the connection pool

    """

    def __init__(self, options: "Options", pool: "ConnectionPool") -> None:
        self.options = options
        self.pool = pool

    def load(self) -> list[dict[str, str]]:
        """
        Return one dictionary of client fields per client entry.  Entries
        without an identifier or a secret are skipped.

        Raises:
            DirectorySearchError: the search failed

        """
        client = self.options.client
        if not client.attribute:
            logger.warning("clients.no_attribute_map")
            return []
        missing = [f for f in REQUIRED_FIELDS if f not in client.attribute]
        if missing:
            logger.warning("clients.unmapped fields=%s", ",".join(missing))
            return []
        with self.pool.connection() as handle:
            result = self.pool.search(
                handle,
                client.base_dn,
                client.scope,
                join_filters(client.filter),
                list(client.attribute.values()),
            )
        if result.status is LDAPResult.NO_RESULT:
            logger.info("clients.loaded count=0")
            return []
        if not result:
            msg = f"Client search failed: {result.status.value}"
            raise DirectorySearchError(msg)
        clients = []
        for dn, entry in result.entries:
            attrs = {key.lower(): v for key, v in entry.items()}
            loaded = {}
            for field, attribute in client.attribute.items():
                values = attrs.get(attribute.lower())
                if values:
                    loaded[field] = values[0].decode("utf-8", errors="replace")
            if any(field not in loaded for field in REQUIRED_FIELDS):
                logger.warning("clients.incomplete dn=%s", dn)
                continue
            clients.append(loaded)
        logger.info("clients.loaded count=%d", len(clients))
        return clients
