"""
Connection pool and bind manager.

Every directory operation goes through a :py:class:`ConnectionHandle` checked
out of a :py:class:`ConnectionPool`.  The pool opens connections lazily,
binds them as the administrative identity, reconnects and retries once when a
connection has gone away, and makes sure a connection that was bound as an
end user is bound back to the administrative identity before anyone else
gets it.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager, suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from ldap.controls import LDAPControl
from ldap.sasl import CB_AUTHNAME, CB_GETREALM, CB_PASS, CB_USER, sasl

from . import ldap
from .codes import LDAPResult
from .exceptions import DirectoryConnectionError, PoolExhaustedError

if TYPE_CHECKING:
    from .options import Options, SaslOptions
    from .typing import LDAPData, ModifyList

logger = logging.getLogger(__name__)

T = TypeVar("T")

#: Errors that mean the connection is gone and should be reopened.
STALE_ERRORS = (ldap.SERVER_DOWN, ldap.CONNECT_ERROR)  # type: ignore[attr-defined]


def classify_error(exc: Exception, operation: str = "search") -> LDAPResult:
    """
    Map a python-ldap exception to an :py:class:`~ldapaaa.codes.LDAPResult`.

    Args:
        exc: the exception
        operation: ``bind``, ``search`` or ``modify``.  ``NO_SUCH_OBJECT`` is
            ``NO_RESULT`` for a search and ``BAD_DN`` otherwise.

    """
    if isinstance(exc, (ldap.INVALID_CREDENTIALS, ldap.CONSTRAINT_VIOLATION)):  # type: ignore[attr-defined]
        return LDAPResult.REJECT
    if isinstance(exc, (ldap.INSUFFICIENT_ACCESS, ldap.UNWILLING_TO_PERFORM)):  # type: ignore[attr-defined]
        return LDAPResult.NOT_PERMITTED
    if isinstance(exc, ldap.INVALID_DN_SYNTAX):  # type: ignore[attr-defined]
        return LDAPResult.BAD_DN
    if isinstance(exc, ldap.NO_SUCH_OBJECT):  # type: ignore[attr-defined]
        return LDAPResult.NO_RESULT if operation == "search" else LDAPResult.BAD_DN
    return LDAPResult.FAIL


def error_message(exc: Exception) -> str:
    if exc.args and isinstance(exc.args[0], dict):
        info = exc.args[0]
        return " ".join(str(info[key]) for key in ("desc", "info") if info.get(key))
    return str(exc)


@dataclass
class SearchResult:
    """
    The outcome of :py:meth:`ConnectionPool.search`.
    """

    status: LDAPResult
    entries: "list[LDAPData]" = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.status is LDAPResult.SUCCESS


class ConnectionHandle:
    """
    One pooled connection.

    Args:
        connection: the python-ldap ``LDAPObject``

    """

    def __init__(self, connection: Any) -> None:
        #: The python-ldap ``LDAPObject``.
        self.connection = connection
        #: Set when the connection was bound as an end user.  The pool binds it
        #: as the administrative identity again before handing it out.
        self.rebind_pending: bool = False
        #: Classification of the last failed operation.
        self.last_error: LDAPResult | None = None
        #: The DN of the identity the connection is bound as.
        self.bound_dn: str | None = None

    @property
    def dead(self) -> bool:
        """
        ``True`` once a reconnect has failed and there is no connection left.
        """
        return self.connection is None

    def __repr__(self) -> str:
        return f"<ConnectionHandle bound_dn={self.bound_dn!r} rebind_pending={self.rebind_pending}>"


class ClientLibrary:
    """
    The process wide python-ldap context: global options such as the debug
    level and the TLS CA locations.  Started once before the first connection
    is opened and stopped at shutdown.

    Args:
        options: the instance configuration

    """

    def __init__(self, options: "Options") -> None:
        self.options = options
        self.started = False

    def start(self) -> None:
        if self.started:
            return
        ldap.set_option(ldap.OPT_DEBUG_LEVEL, self.options.connection.ldap_debug)  # type: ignore[attr-defined]
        tls = self.options.tls
        if tls.ca_file:
            ldap.set_option(ldap.OPT_X_TLS_CACERTFILE, tls.ca_file)  # type: ignore[attr-defined]
        if tls.ca_path:
            ldap.set_option(ldap.OPT_X_TLS_CACERTDIR, tls.ca_path)  # type: ignore[attr-defined]
        if tls.random_file:
            ldap.set_option(ldap.OPT_X_TLS_RANDOM_FILE, tls.random_file)  # type: ignore[attr-defined]
        self.started = True
        logger.debug("ldap.library.started instance=%s", self.options.name)

    def stop(self) -> None:
        self.started = False
        logger.debug("ldap.library.stopped instance=%s", self.options.name)


class ConnectionPool:
    """
    A bounded pool of bound directory connections.

    This class is thread-safe: each :py:class:`ConnectionHandle` is owned by
    exactly one caller between :py:meth:`acquire` and :py:meth:`release`.

    Args:
        options: the instance configuration

    """

    def __init__(self, options: "Options") -> None:
        self.options = options
        self.logger = logger
        self._idle: list[ConnectionHandle] = []
        self._open = 0
        self._closed = False
        self._lock = threading.Condition()

    # -----------------------
    # Connection lifecycle
    # -----------------------

    def _connect(self) -> Any:
        """
        Open a new python-ldap connection and apply our connection options.

        Raises:
            ldap.LDAPError: StartTLS failed

        Returns:
            An unbound ``LDAPObject``.

        """
        config = self.options.connection
        tls = self.options.tls
        ldap_object = ldap.initialize(self.options.uri)  # type: ignore[attr-defined]
        ldap_object.set_option(ldap.OPT_PROTOCOL_VERSION, ldap.VERSION3)  # type: ignore[attr-defined]
        if config.chase_referrals:
            ldap_object.set_option(ldap.OPT_REFERRALS, 1)  # type: ignore[attr-defined]
        else:
            ldap_object.set_option(ldap.OPT_REFERRALS, 0)  # type: ignore[attr-defined]
        ldap_object.set_option(ldap.OPT_NETWORK_TIMEOUT, config.net_timeout)  # type: ignore[attr-defined]
        ldap_object.set_option(ldap.OPT_TIMELIMIT, config.srv_timelimit)  # type: ignore[attr-defined]
        ldap_object.set_option(ldap.OPT_DEREF, config.dereference)  # type: ignore[attr-defined]
        for name, value in (
            ("OPT_X_KEEPALIVE_IDLE", config.idle),
            ("OPT_X_KEEPALIVE_PROBES", config.probes),
            ("OPT_X_KEEPALIVE_INTERVAL", config.interval),
        ):
            try:
                ldap_object.set_option(getattr(ldap, name), value)
            except (AttributeError, ValueError):
                # libldap built without keepalive support
                self.logger.debug("ldap.option.unsupported option=%s", name)
        ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, tls.require_cert)  # type: ignore[attr-defined]
        if tls.ca_file:
            ldap_object.set_option(ldap.OPT_X_TLS_CACERTFILE, tls.ca_file)  # type: ignore[attr-defined]
        if tls.ca_path:
            ldap_object.set_option(ldap.OPT_X_TLS_CACERTDIR, tls.ca_path)  # type: ignore[attr-defined]
        if tls.certificate_file:
            ldap_object.set_option(ldap.OPT_X_TLS_CERTFILE, tls.certificate_file)  # type: ignore[attr-defined]
        if tls.private_key_file:
            ldap_object.set_option(ldap.OPT_X_TLS_KEYFILE, tls.private_key_file)  # type: ignore[attr-defined]
        ldap_object.set_option(ldap.OPT_X_TLS_NEWCTX, 0)  # type: ignore[attr-defined]
        if tls.start_tls:
            ldap_object.start_tls_s()
        return ldap_object

    def _do_bind(
        self,
        connection: Any,
        dn: str | None,
        password: str | None,
        sasl_options: "SaslOptions | None" = None,
    ) -> None:
        if sasl_options and sasl_options.mech:
            auth = sasl(
                {
                    CB_AUTHNAME: dn or "",
                    CB_PASS: password or "",
                    CB_USER: sasl_options.proxy or "",
                    CB_GETREALM: sasl_options.realm or "",
                },
                sasl_options.mech,
            )
            connection.sasl_interactive_bind_s("", auth)
        else:
            connection.simple_bind_s(dn or "", password or "")

    def _bind_admin(self, handle: ConnectionHandle) -> None:
        """
        Bind ``handle`` as the administrative identity.

        Raises:
            ldap.LDAPError: the bind failed

        """
        self._do_bind(
            handle.connection,
            self.options.identity,
            self.options.password,
            self.options.sasl,
        )
        handle.bound_dn = self.options.identity
        handle.rebind_pending = False

    def _open_handle(self) -> ConnectionHandle:
        try:
            handle = ConnectionHandle(self._connect())
            self._bind_admin(handle)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            self.logger.error(
                "ldap.connect.failed uri=%s error=%s", self.options.uri, error_message(e)
            )
            msg = f"Could not connect to {self.options.uri}: {error_message(e)}"
            raise DirectoryConnectionError(msg) from e
        self.logger.debug("ldap.connect.success uri=%s", self.options.uri)
        return handle

    def _close_handle(self, handle: ConnectionHandle) -> None:
        if handle.dead:
            return
        with suppress(ldap.LDAPError):  # type: ignore[attr-defined]
            handle.connection.unbind_s()

    def _discard(self, handle: ConnectionHandle) -> None:
        self._close_handle(handle)
        with self._lock:
            self._open -= 1
            self._lock.notify()

    def reconnect(self, handle: ConnectionHandle) -> None:
        """
        Replace the connection inside ``handle`` with a fresh one bound as the
        administrative identity.

        If the new connection cannot be opened the handle is left dead, and
        :py:meth:`release` drops it from the pool.

        Raises:
            DirectoryConnectionError: the new connection could not be opened

        """
        self.logger.warning("ldap.reconnect uri=%s", self.options.uri)
        self._close_handle(handle)
        handle.connection = None
        handle.bound_dn = None
        fresh = self._open_handle()
        handle.connection = fresh.connection
        handle.bound_dn = fresh.bound_dn
        handle.rebind_pending = False

    def start(self) -> None:
        """
        Open ``pool.start`` connections.
        """
        handles = [self.acquire() for _ in range(self.options.pool.start)]
        for handle in handles:
            self.release(handle)

    def close(self) -> None:
        """
        Close every idle connection and refuse further checkouts.  Checked out
        connections are closed when they are released.
        """
        with self._lock:
            self._closed = True
            idle, self._idle = self._idle, []
            self._open -= len(idle)
            self._lock.notify_all()
        for handle in idle:
            self._close_handle(handle)

    # -----------------------
    # Checkout
    # -----------------------

    def acquire(self, timeout: float | None = None) -> ConnectionHandle:
        """
        Check out a connection bound as the administrative identity.

        Keyword Args:
            timeout: seconds to wait for a free connection; defaults to
                ``pool.timeout``

        Raises:
            PoolExhaustedError: no connection became free in time
            DirectoryConnectionError: a new connection could not be opened,
                or the pool is closed

        """
        if timeout is None:
            timeout = self.options.pool.timeout
        deadline = time.monotonic() + timeout
        handle: ConnectionHandle | None = None
        with self._lock:
            while True:
                if self._closed:
                    msg = "Connection pool is closed"
                    raise DirectoryConnectionError(msg)
                if self._idle:
                    handle = self._idle.pop()
                    break
                if self._open < self.options.pool.max:
                    self._open += 1
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0 or not self._lock.wait(remaining):
                    self.logger.error(
                        "ldap.pool.exhausted max=%d timeout=%s",
                        self.options.pool.max,
                        timeout,
                    )
                    msg = (
                        f"No free connection within {timeout}s "
                        f"(pool.max={self.options.pool.max})"
                    )
                    raise PoolExhaustedError(msg)
        if handle is None:
            try:
                return self._open_handle()
            except DirectoryConnectionError:
                with self._lock:
                    self._open -= 1
                    self._lock.notify()
                raise
        if handle.rebind_pending:
            self._restore(handle)
        return handle

    def _restore(self, handle: ConnectionHandle) -> None:
        """
        Bind ``handle`` back to the administrative identity, reopening it if
        that fails.

        Raises:
            DirectoryConnectionError: the connection could not be reopened

        """
        try:
            self._bind_admin(handle)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            self.logger.warning("ldap.rebind.failed error=%s", error_message(e))
            try:
                self.reconnect(handle)
            except DirectoryConnectionError:
                self._discard(handle)
                raise

    def release(self, handle: ConnectionHandle) -> None:
        """
        Return ``handle`` to the pool.  A connection that was bound as an end
        user is bound as the administrative identity first, or closed if that
        fails.  A dead connection is dropped.
        """
        if handle.dead:
            self.logger.warning("ldap.pool.drop_dead_connection")
            self._discard(handle)
            return
        if handle.rebind_pending:
            try:
                self._bind_admin(handle)
            except ldap.LDAPError as e:  # type: ignore[attr-defined]
                self.logger.warning(
                    "ldap.rebind.failed error=%s action=discard", error_message(e)
                )
                self._discard(handle)
                return
        with self._lock:
            if not self._closed:
                self._idle.append(handle)
                self._lock.notify()
                return
            self._open -= 1
        self._close_handle(handle)

    @contextmanager
    def connection(self) -> Iterator[ConnectionHandle]:
        """
        Check out a connection for the duration of a ``with`` block.
        """
        handle = self.acquire()
        try:
            yield handle
        finally:
            # We do this in a finally: branch so that the connection goes back
            # to the pool no matter what happens in the block.
            self.release(handle)

    # -----------------------
    # Operations
    # -----------------------

    def _call(self, handle: ConnectionHandle, func: Callable[[Any], T]) -> T:
        """
        Run ``func(handle.connection)``, reconnecting and retrying once if the
        connection turns out to be dead.
        """
        try:
            return func(handle.connection)
        except STALE_ERRORS as e:
            self.logger.warning("ldap.connection.stale error=%s", error_message(e))
        self.reconnect(handle)
        return func(handle.connection)

    def bind(
        self,
        handle: ConnectionHandle,
        dn: str,
        password: str,
        sasl_options: "SaslOptions | None" = None,
    ) -> LDAPResult:
        """
        Bind ``handle`` as an end user.  The handle is marked rebind pending.

        Args:
            handle: the checked out connection
            dn: the DN (or SASL authentication identity) to bind as
            password: the credential

        Keyword Args:
            sasl_options: SASL parameters, already expanded; a simple bind is
                used when there is no mechanism

        """

        def run(connection: Any) -> None:
            handle.rebind_pending = True
            self._do_bind(connection, dn, password, sasl_options)

        try:
            self._call(handle, run)
        except (ldap.LDAPError, DirectoryConnectionError) as e:  # type: ignore[attr-defined]
            handle.last_error = classify_error(e, "bind")
            self.logger.warning(
                "ldap.bind.failed dn=%s result=%s error=%s",
                dn,
                handle.last_error.value,
                error_message(e),
            )
            return handle.last_error
        handle.bound_dn = dn
        return LDAPResult.SUCCESS

    def search(
        self,
        handle: ConnectionHandle,
        base: str,
        scope: int,
        filterstr: str,
        attrs: list[str] | None = None,
        serverctrls: list[LDAPControl] | None = None,
    ) -> SearchResult:
        """
        Search the directory.

        Referrals and continuation references are dropped from the results.
        No matching entries is ``NO_RESULT``.

        Args:
            handle: the checked out connection
            base: the base DN
            scope: one of the ``ldap.SCOPE_*`` constants
            filterstr: the filter

        Keyword Args:
            attrs: attributes to fetch; ``None`` for all
            serverctrls: server controls, e.g. a sort control

        """
        timeout = self.options.connection.res_timeout

        def run(connection: Any) -> "list[LDAPData]":
            msgid = connection.search_ext(
                base, scope, filterstr, attrs or None, serverctrls=serverctrls or None
            )
            try:
                _, rdata, _, _ = connection.result3(msgid, all=1, timeout=timeout)
            except ldap.TIMEOUT:  # type: ignore[attr-defined]
                # Nothing may stay queued on a pooled connection
                with suppress(ldap.LDAPError):  # type: ignore[attr-defined]
                    connection.abandon_ext(msgid)
                raise
            # Referrals come back with something other than a dict as the
            # attributes
            return [(dn, entry) for dn, entry in rdata if isinstance(entry, dict)]

        self.logger.debug(
            "ldap.search base=%s scope=%s filter=%s attrs=%s", base, scope, filterstr, attrs
        )
        try:
            entries = self._call(handle, run)
        except (ldap.LDAPError, DirectoryConnectionError) as e:  # type: ignore[attr-defined]
            handle.last_error = classify_error(e, "search")
            if handle.last_error is LDAPResult.NO_RESULT:
                self.logger.debug("ldap.search.no_such_object base=%s", base)
            else:
                self.logger.error(
                    "ldap.search.failed base=%s filter=%s result=%s error=%s",
                    base,
                    filterstr,
                    handle.last_error.value,
                    error_message(e),
                )
            return SearchResult(handle.last_error)
        if not entries:
            return SearchResult(LDAPResult.NO_RESULT)
        return SearchResult(LDAPResult.SUCCESS, entries)

    def modify(self, handle: ConnectionHandle, dn: str, modlist: "ModifyList") -> LDAPResult:
        """
        Apply ``modlist`` to the entry at ``dn``.
        """
        try:
            self._call(handle, lambda connection: connection.modify_s(dn, modlist))
        except (ldap.LDAPError, DirectoryConnectionError) as e:  # type: ignore[attr-defined]
            handle.last_error = classify_error(e, "modify")
            self.logger.error(
                "ldap.modify.failed dn=%s result=%s error=%s",
                dn,
                handle.last_error.value,
                error_message(e),
            )
            return handle.last_error
        return LDAPResult.SUCCESS
