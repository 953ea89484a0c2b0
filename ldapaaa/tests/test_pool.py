"""
Tests for the connection pool and bind manager.
"""

import unittest
from unittest.mock import MagicMock, patch

from django.conf import settings

from ldapaaa import ldap
from ldapaaa.codes import LDAPResult
from ldapaaa.exceptions import DirectoryConnectionError, PoolExhaustedError
from ldapaaa.options import Options
from ldapaaa.pool import ConnectionPool, SearchResult, classify_error, error_message

if not settings.configured:
    settings.configure()

ADMIN_DN = "cn=radius,ou=services,dc=example,dc=com"
USER_DN = "uid=alice,ou=people,dc=example,dc=com"


def make_options(**kwargs):
    config = {
        "server": "ldap.example.com",
        "identity": ADMIN_DN,
        "password": "secret",
        "pool": {"max": 2, "timeout": 0},
    }
    config.update(kwargs)
    return Options(config=config)


class TestClassifyError(unittest.TestCase):
    """Test mapping python-ldap errors to results."""

    def test_classify(self):
        cases = [
            (ldap.INVALID_CREDENTIALS({}), "bind", LDAPResult.REJECT),
            (ldap.CONSTRAINT_VIOLATION({}), "bind", LDAPResult.REJECT),
            (ldap.INSUFFICIENT_ACCESS({}), "modify", LDAPResult.NOT_PERMITTED),
            (ldap.UNWILLING_TO_PERFORM({}), "bind", LDAPResult.NOT_PERMITTED),
            (ldap.INVALID_DN_SYNTAX({}), "search", LDAPResult.BAD_DN),
            (ldap.NO_SUCH_OBJECT({}), "search", LDAPResult.NO_RESULT),
            (ldap.NO_SUCH_OBJECT({}), "bind", LDAPResult.BAD_DN),
            (ldap.NO_SUCH_OBJECT({}), "modify", LDAPResult.BAD_DN),
            (ldap.TIMEOUT({}), "search", LDAPResult.FAIL),
            (ldap.SERVER_DOWN({}), "search", LDAPResult.FAIL),
        ]
        for exc, operation, expected in cases:
            with self.subTest(exc=exc, operation=operation):
                self.assertEqual(classify_error(exc, operation), expected)

    def test_error_message(self):
        exc = ldap.INVALID_CREDENTIALS({"desc": "Invalid credentials", "info": "bad"})
        self.assertEqual(error_message(exc), "Invalid credentials bad")
        self.assertEqual(error_message(ValueError("boom")), "boom")

    def test_search_result_truth(self):
        self.assertTrue(SearchResult(LDAPResult.SUCCESS, [(USER_DN, {})]))
        self.assertFalse(SearchResult(LDAPResult.NO_RESULT))


class TestConnectionPool(unittest.TestCase):
    """Test :py:class:`ConnectionPool` with a mocked python-ldap."""

    def setUp(self):
        self.connections = []

        def initialize(uri):
            connection = MagicMock(name=f"connection{len(self.connections)}")
            connection.search_ext.return_value = 1
            connection.result3.return_value = (
                ldap.RES_SEARCH_RESULT,
                [(USER_DN, {"uid": [b"alice"]})],
                1,
                [],
            )
            self.connections.append(connection)
            return connection

        patcher = patch("ldapaaa.ldap.initialize", side_effect=initialize)
        self.initialize = patcher.start()
        self.addCleanup(patcher.stop)
        self.pool = ConnectionPool(make_options())

    def test_connections_are_opened_lazily(self):
        self.assertEqual(self.connections, [])
        handle = self.pool.acquire()
        self.initialize.assert_called_once_with("ldap://ldap.example.com")
        handle.connection.simple_bind_s.assert_called_once_with(ADMIN_DN, "secret")
        handle.connection.set_option.assert_any_call(
            ldap.OPT_PROTOCOL_VERSION, ldap.VERSION3
        )
        handle.connection.set_option.assert_any_call(ldap.OPT_REFERRALS, 0)
        self.assertEqual(handle.bound_dn, ADMIN_DN)
        self.pool.release(handle)

    def test_start_opens_initial_connections(self):
        pool = ConnectionPool(make_options(pool={"start": 2, "max": 2}))
        pool.start()
        self.assertEqual(len(self.connections), 2)
        self.assertEqual(len(pool._idle), 2)

    def test_released_connections_are_reused(self):
        with self.pool.connection() as handle:
            pass
        with self.pool.connection() as again:
            self.assertIs(again, handle)
        self.assertEqual(len(self.connections), 1)

    def test_exhausted(self):
        self.pool.acquire()
        self.pool.acquire()
        with self.assertRaises(PoolExhaustedError):
            self.pool.acquire()

    def test_release_frees_a_slot(self):
        first = self.pool.acquire()
        self.pool.acquire()
        self.pool.release(first)
        self.assertIs(self.pool.acquire(), first)

    def test_connection_is_released_on_error(self):
        with self.assertRaises(RuntimeError), self.pool.connection():
            raise RuntimeError
        self.assertEqual(len(self.pool._idle), 1)

    def test_connect_failure(self):
        self.initialize.side_effect = ldap.SERVER_DOWN({"desc": "Can't contact LDAP server"})
        with self.assertRaises(DirectoryConnectionError):
            self.pool.acquire()
        # the failed slot is given back
        self.assertEqual(self.pool._open, 0)

    def test_admin_bind_failure(self):
        def initialize(uri):
            connection = MagicMock()
            connection.simple_bind_s.side_effect = ldap.INVALID_CREDENTIALS({})
            return connection

        self.initialize.side_effect = initialize
        with self.assertRaises(DirectoryConnectionError):
            self.pool.acquire()

    def test_user_bind_marks_rebind_pending(self):
        handle = self.pool.acquire()
        result = self.pool.bind(handle, USER_DN, "wonderland")
        self.assertEqual(result, LDAPResult.SUCCESS)
        self.assertTrue(handle.rebind_pending)
        self.assertEqual(handle.bound_dn, USER_DN)
        handle.connection.simple_bind_s.assert_called_with(USER_DN, "wonderland")
        self.pool.release(handle)
        # back to the administrative identity before anyone else gets it
        handle.connection.simple_bind_s.assert_called_with(ADMIN_DN, "secret")
        self.assertFalse(handle.rebind_pending)
        self.assertEqual(handle.bound_dn, ADMIN_DN)

    def test_failed_user_bind(self):
        handle = self.pool.acquire()
        handle.connection.simple_bind_s.side_effect = [ldap.INVALID_CREDENTIALS({}), None]
        result = self.pool.bind(handle, USER_DN, "wrong")
        self.assertEqual(result, LDAPResult.REJECT)
        self.assertEqual(handle.last_error, LDAPResult.REJECT)
        self.assertTrue(handle.rebind_pending)
        self.pool.release(handle)
        self.assertFalse(handle.rebind_pending)

    def test_failed_rebind_discards_connection(self):
        handle = self.pool.acquire()
        self.pool.bind(handle, USER_DN, "wonderland")
        handle.connection.simple_bind_s.side_effect = ldap.SERVER_DOWN({})
        self.pool.release(handle)
        handle.connection.unbind_s.assert_called_once_with()
        self.assertEqual(self.pool._idle, [])
        self.assertEqual(self.pool._open, 0)

    def test_acquire_restores_pending_rebind(self):
        handle = self.pool.acquire()
        handle.rebind_pending = True
        self.pool._idle.append(handle)
        again = self.pool.acquire()
        self.assertIs(again, handle)
        self.assertFalse(again.rebind_pending)
        again.connection.simple_bind_s.assert_called_with(ADMIN_DN, "secret")

    def test_sasl_bind(self):
        options = make_options()
        sasl_options = options.user.sasl
        sasl_options.mech = "DIGEST-MD5"
        sasl_options.realm = "EXAMPLE.COM"
        handle = self.pool.acquire()
        result = self.pool.bind(handle, "alice", "wonderland", sasl_options)
        self.assertEqual(result, LDAPResult.SUCCESS)
        args = handle.connection.sasl_interactive_bind_s.call_args[0]
        self.assertEqual(args[0], "")
        self.assertEqual(args[1].mech, b"DIGEST-MD5")

    def test_search(self):
        handle = self.pool.acquire()
        result = self.pool.search(
            handle, "ou=people,dc=example,dc=com", ldap.SCOPE_SUBTREE, "(uid=alice)", ["uid"]
        )
        self.assertEqual(result.status, LDAPResult.SUCCESS)
        self.assertEqual(result.entries, [(USER_DN, {"uid": [b"alice"]})])
        handle.connection.search_ext.assert_called_once_with(
            "ou=people,dc=example,dc=com",
            ldap.SCOPE_SUBTREE,
            "(uid=alice)",
            ["uid"],
            serverctrls=None,
        )
        handle.connection.result3.assert_called_once_with(1, all=1, timeout=20.0)

    def test_search_drops_referrals(self):
        handle = self.pool.acquire()
        handle.connection.result3.return_value = (
            ldap.RES_SEARCH_RESULT,
            [(None, ["ldap://other.example.com/dc=example,dc=com"])],
            1,
            [],
        )
        result = self.pool.search(handle, "dc=example,dc=com", ldap.SCOPE_SUBTREE, "(uid=alice)")
        self.assertEqual(result.status, LDAPResult.NO_RESULT)

    def test_search_no_such_object(self):
        handle = self.pool.acquire()
        handle.connection.search_ext.side_effect = ldap.NO_SUCH_OBJECT({})
        result = self.pool.search(handle, "ou=gone,dc=example,dc=com", ldap.SCOPE_BASE, "(objectClass=*)")
        self.assertEqual(result.status, LDAPResult.NO_RESULT)
        self.assertEqual(result.entries, [])

    def test_search_failure(self):
        handle = self.pool.acquire()
        handle.connection.result3.side_effect = ldap.TIMEOUT({})
        result = self.pool.search(handle, "dc=example,dc=com", ldap.SCOPE_SUBTREE, "(uid=alice)")
        self.assertEqual(result.status, LDAPResult.FAIL)
        self.assertEqual(handle.last_error, LDAPResult.FAIL)
        handle.connection.abandon_ext.assert_called_once_with(1)

    def test_stale_connection_is_retried_once(self):
        handle = self.pool.acquire()
        stale = handle.connection
        stale.search_ext.side_effect = ldap.SERVER_DOWN({})
        result = self.pool.search(handle, "dc=example,dc=com", ldap.SCOPE_SUBTREE, "(uid=alice)")
        self.assertEqual(result.status, LDAPResult.SUCCESS)
        self.assertEqual(len(self.connections), 2)
        self.assertIsNot(handle.connection, stale)
        stale.unbind_s.assert_called_once_with()

    def test_stale_connection_is_not_retried_twice(self):
        def initialize(uri):
            connection = MagicMock()
            connection.search_ext.side_effect = ldap.SERVER_DOWN({})
            self.connections.append(connection)
            return connection

        self.initialize.side_effect = initialize
        handle = self.pool.acquire()
        result = self.pool.search(handle, "dc=example,dc=com", ldap.SCOPE_SUBTREE, "(uid=alice)")
        self.assertEqual(result.status, LDAPResult.FAIL)
        self.assertEqual(len(self.connections), 2)

    def test_failed_reconnect_drops_connection(self):
        handle = self.pool.acquire()
        stale = handle.connection
        stale.search_ext.side_effect = ldap.SERVER_DOWN({})
        self.initialize.side_effect = ldap.SERVER_DOWN({"desc": "Can't contact LDAP server"})
        result = self.pool.search(handle, "dc=example,dc=com", ldap.SCOPE_SUBTREE, "(uid=alice)")
        self.assertEqual(result.status, LDAPResult.FAIL)
        self.assertTrue(handle.dead)
        self.pool.release(handle)
        self.assertEqual(self.pool._idle, [])
        self.assertEqual(self.pool._open, 0)
        stale.unbind_s.assert_called_once_with()

        # the server is back
        self.initialize.side_effect = None
        self.initialize.return_value = MagicMock(name="fresh")
        self.initialize.return_value.search_ext.return_value = 2
        self.initialize.return_value.result3.return_value = (
            ldap.RES_SEARCH_RESULT,
            [(USER_DN, {"uid": [b"alice"]})],
            2,
            [],
        )
        with self.pool.connection() as again:
            self.assertIs(again.connection, self.initialize.return_value)
            result = self.pool.search(again, "dc=example,dc=com", ldap.SCOPE_SUBTREE, "(uid=alice)")
        self.assertEqual(result.status, LDAPResult.SUCCESS)

    def test_modify(self):
        handle = self.pool.acquire()
        modlist = [(ldap.MOD_REPLACE, "description", [b"x"])]
        self.assertEqual(self.pool.modify(handle, USER_DN, modlist), LDAPResult.SUCCESS)
        handle.connection.modify_s.assert_called_once_with(USER_DN, modlist)
        handle.connection.modify_s.side_effect = ldap.NO_SUCH_OBJECT({})
        self.assertEqual(self.pool.modify(handle, USER_DN, modlist), LDAPResult.BAD_DN)

    def test_close(self):
        handle = self.pool.acquire()
        self.pool.release(handle)
        self.pool.close()
        handle.connection.unbind_s.assert_called_once_with()
        with self.assertRaises(DirectoryConnectionError):
            self.pool.acquire()
