"""
Tests for LDAP URL queries.
"""

import unittest
from unittest.mock import MagicMock

from django.conf import settings

from ldapaaa import ldap
from ldapaaa.attributes import Request
from ldapaaa.codes import LDAPResult, RCode
from ldapaaa.options import Options
from ldapaaa.pool import SearchResult
from ldapaaa.query import QueryFacade

if not settings.configured:
    settings.configure()

ALICE_DN = "uid=alice,ou=people,dc=example,dc=com"


def make_pool(search):
    handle = MagicMock()
    pool = MagicMock()
    pool.connection.return_value.__enter__.return_value = handle
    pool.search.side_effect = search
    return pool, handle


class TestQueryFacade(unittest.TestCase):
    """Test :py:class:`QueryFacade`."""

    def setUp(self):
        self.options = Options(config={"server": "ldap.example.com"})
        self.result = SearchResult(
            LDAPResult.SUCCESS,
            [(ALICE_DN, {"mail": [b"alice@example.com"], "cn": [b"Alice"]})],
        )
        self.pool, self.handle = make_pool(lambda *args, **kwargs: self.result)
        self.queries = QueryFacade(self.options, self.pool)
        self.request = Request(packet={"User-Name": "alice"})

    def test_query_value(self):
        result = self.queries.query_value(
            self.request, "ldap:///ou=people,dc=example,dc=com?mail?sub?(uid=%{User-Name})"
        )
        self.assertEqual(result.rcode, RCode.OK)
        self.assertEqual(result.value, "alice@example.com")
        args, kwargs = self.pool.search.call_args
        self.assertEqual(
            args[1:],
            ("ou=people,dc=example,dc=com", ldap.SCOPE_SUBTREE, "(uid=alice)", ["mail"]),
        )
        self.assertEqual(kwargs["serverctrls"], [])

    def test_query_value_escapes_substitutions(self):
        self.request.request.set("User-Name", "*")
        self.queries.query_value(
            self.request, "ldap:///ou=people,dc=example,dc=com?mail?sub?(uid=%{User-Name})"
        )
        self.assertEqual(self.pool.search.call_args[0][3], "(uid=\\2a)")

    def test_query_value_defaults(self):
        self.queries.query_value(self.request, "ldap:///uid=alice,ou=people,dc=example,dc=com?mail")
        self.assertEqual(
            self.pool.search.call_args[0][1:4],
            ("uid=alice,ou=people,dc=example,dc=com", ldap.SCOPE_BASE, "(objectClass=*)"),
        )

    def test_query_value_needs_one_attribute(self):
        for url in (
            "ldap:///dc=example,dc=com??sub?(uid=alice)",
            "ldap:///dc=example,dc=com?mail,cn?sub?(uid=alice)",
            "ldap:///dc=example,dc=com?*?sub?(uid=alice)",
        ):
            with self.subTest(url=url):
                self.assertEqual(self.queries.query_value(self.request, url).rcode, RCode.INVALID)
        self.pool.search.assert_not_called()

    def test_query_value_invalid_url(self):
        self.assertEqual(
            self.queries.query_value(self.request, "http://example.com/").rcode, RCode.INVALID
        )

    def test_query_value_results(self):
        url = "ldap:///dc=example,dc=com?telephoneNumber?sub?(uid=alice)"
        self.assertEqual(self.queries.query_value(self.request, url), (RCode.OK, None))
        self.result = SearchResult(LDAPResult.NO_RESULT)
        self.assertEqual(self.queries.query_value(self.request, url).rcode, RCode.NOTFOUND)
        self.result = SearchResult(LDAPResult.FAIL)
        self.assertEqual(self.queries.query_value(self.request, url).rcode, RCode.FAIL)

    def test_sort_extension(self):
        self.queries.query_value(
            self.request, "ldap:///dc=example,dc=com?mail?sub?(uid=alice)?!sss=-cn"
        )
        controls = self.pool.search.call_args[1]["serverctrls"]
        self.assertEqual(len(controls), 1)
        self.assertTrue(controls[0].criticality)
        self.assertEqual(controls[0].sort_keys, [("cn", None, True)])

    def test_query_map(self):
        rcode = self.queries.query_map(
            self.request,
            "ldap:///ou=people,dc=example,dc=com??sub?(uid=%{User-Name})",
            ["reply:Reply-Message := cn", "control:Mail := mail"],
        )
        self.assertEqual(rcode, RCode.UPDATED)
        self.assertEqual(self.request.reply.get("Reply-Message"), "Alice")
        self.assertEqual(self.request.control.get("Mail"), "alice@example.com")
        self.assertEqual(self.pool.search.call_args[0][4], ["cn", "mail"])

    def test_query_map_results(self):
        url = "ldap:///ou=people,dc=example,dc=com??sub?(uid=alice)"
        self.result = SearchResult(LDAPResult.NO_RESULT)
        self.assertEqual(self.queries.query_map(self.request, url, ["Reply-Message := cn"]), RCode.NOOP)
        self.result = SearchResult(LDAPResult.FAIL)
        self.assertEqual(self.queries.query_map(self.request, url, ["Reply-Message := cn"]), RCode.FAIL)
        self.assertEqual(self.queries.query_map(self.request, url, ["garbage"]), RCode.INVALID)
