"""
LDAP type definitions.

This module provides type aliases for the python-ldap data structures that
move between the pool, the resolvers and the attribute map.
"""

#: The attributes of a single entry, as returned by python-ldap.
LDAPEntry = dict[str, list[bytes]]
#: A ``(dn, attributes)`` search result.
LDAPData = tuple[str, LDAPEntry]
#: One ``modify_s`` operation: ``(mod_op, attribute, values)``.  ``values`` is
#: ``None`` to delete the whole attribute.
ModifyOperation = tuple[int, str, list[bytes] | None]
ModifyList = list[ModifyOperation]
