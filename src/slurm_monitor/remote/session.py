"""Persistent SSH session to the cluster login node.

Owns the single paramiko client used for every remote command. Tracks the
connection state, notifies observers on each state change, watches the
transport for drops and reconnects after a fixed delay until disposed.
"""

import enum
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import paramiko
import structlog

logger = structlog.get_logger(__name__)

KEY_CANDIDATES = ("id_ed25519", "id_rsa", "id_ecdsa")

DEFAULT_CONNECT_TIMEOUT = 15.0
DEFAULT_KEEPALIVE_INTERVAL = 30
DEFAULT_RECONNECT_DELAY = 5.0
DEFAULT_COMMAND_TIMEOUT = 120.0

# How often the watcher thread polls the transport for liveness.
WATCH_INTERVAL = 1.0


class ConnectionState(enum.Enum):
    """Connection state reported to observers."""

    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    CONNECTED = "connected"


StatusCallback = Callable[[ConnectionState], None]


class SessionError(Exception):
    """Base class for remote session errors."""


class NoCredentialFound(SessionError):
    """Raised when no private key exists in the key directory."""


class TransportError(SessionError):
    """Raised when the SSH transport fails to connect or run a command."""


class ConnectTimeout(TransportError):
    """Raised when session setup exceeds the connect timeout."""


class CommandTimeout(TransportError):
    """Raised when a remote command exceeds the command timeout."""


class NotConnected(SessionError):
    """Raised when a command is issued while the session is not connected."""


class SessionDisposed(SessionError):
    """Raised when connecting a session that has been disposed."""


class CommandFailed(SessionError):
    """Raised when a remote command exits non-zero and wrote to stderr."""

    def __init__(self, exit_code: int, stderr: str):
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"Remote command failed (code {exit_code}): {stderr.strip()}")


def _read_streams(
    stdout: paramiko.ChannelFile,
    stderr: paramiko.ChannelFile,
) -> tuple[bytes, bytes]:
    """Read stdout and stderr to EOF concurrently.

    Draining stderr on its own thread keeps a command that fills the stderr
    window from stalling the stdout read.
    """
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ssh-stderr")
    try:
        err_future = pool.submit(stderr.read)
        out = stdout.read()
        return out, err_future.result()
    finally:
        pool.shutdown(wait=False)


def _close_channel(channel: paramiko.Channel | None) -> None:
    if channel is not None:
        channel.close()


class SessionManager:
    """Single SSH session with automatic reconnection.

    ``connect()`` opens the session, ``exec_command()`` runs commands on it and
    ``dispose()`` shuts it down. When the transport drops while connected the
    manager moves to RECONNECTING and retries every ``reconnect_delay`` seconds
    until a connect succeeds or the manager is disposed.

    The status, the observers, the reconnect timer and the client handle are
    shared between the caller, the watcher thread and timer threads, so all of
    them are guarded by one re-entrant lock.
    """

    def __init__(
        self,
        host: str,
        user: str,
        key_dir: str | Path | None = None,
        key_candidates: Sequence[str] = KEY_CANDIDATES,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        keepalive_interval: int = DEFAULT_KEEPALIVE_INTERVAL,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        command_timeout: float | None = DEFAULT_COMMAND_TIMEOUT,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ):
        """Initialize the session manager.

        Args:
            host: Login node hostname.
            user: Remote username.
            key_dir: Directory searched for private keys (default: ~/.ssh).
            key_candidates: Key file names tried in order.
            connect_timeout: Session setup timeout in seconds.
            keepalive_interval: Seconds between keep-alive probes.
            reconnect_delay: Fixed delay in seconds before each reconnect.
            command_timeout: Per-command timeout in seconds, None to wait forever.
            client_factory: Factory for the SSH client.
            timer_factory: Factory for the reconnect timer.

        Raises:
            ValueError: If host or user is empty or a timeout is not positive.
        """
        if not host:
            msg = "host cannot be empty"
            raise ValueError(msg)
        if not user:
            msg = "user cannot be empty"
            raise ValueError(msg)
        if connect_timeout <= 0:
            msg = "connect_timeout must be positive"
            raise ValueError(msg)
        if command_timeout is not None and command_timeout <= 0:
            msg = "command_timeout must be positive"
            raise ValueError(msg)

        self.host = host
        self.user = user
        self.key_dir = Path(key_dir) if key_dir else Path.home() / ".ssh"
        self.key_candidates = tuple(key_candidates)
        self.connect_timeout = connect_timeout
        self.keepalive_interval = keepalive_interval
        self.reconnect_delay = reconnect_delay
        self.command_timeout = command_timeout

        self._client_factory = client_factory
        self._timer_factory = timer_factory

        self._lock = threading.RLock()
        self._connect_lock = threading.Lock()
        self._status = ConnectionState.DISCONNECTED
        self._observers: list[StatusCallback] = []
        self._client: paramiko.SSHClient | None = None
        self._watch_stop: threading.Event | None = None
        self._reconnect_timer: threading.Timer | None = None
        self._disposed = False

    def __enter__(self):
        """Enter context manager."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit context manager and dispose the session."""
        self.dispose()

    @property
    def status(self) -> ConnectionState:
        """Current connection state."""
        with self._lock:
            return self._status

    def on_status_change(self, callback: StatusCallback) -> None:
        """Register an observer called on every distinct state change."""
        with self._lock:
            self._observers.append(callback)

    def find_key(self) -> Path | None:
        """Return the first existing private key candidate, if any."""
        for name in self.key_candidates:
            path = self.key_dir / name
            if path.exists():
                return path
        return None

    def connect(self) -> None:
        """Open (or reopen) the SSH session.

        Raises:
            SessionDisposed: If dispose() has already been called.
            NoCredentialFound: If no key candidate exists.
            ConnectTimeout: If session setup timed out.
            TransportError: If the session could not be established.
        """
        with self._lock:
            if self._disposed:
                msg = f"Session to {self.host} has been disposed"
                raise SessionDisposed(msg)
        self._open()

    def _open(
        self,
        failure_status: ConnectionState = ConnectionState.DISCONNECTED,
    ) -> None:
        """Run one connect attempt, reporting ``failure_status`` if it fails."""
        key_path = self.find_key()
        if key_path is None:
            msg = f"No SSH private key found in {self.key_dir}"
            raise NoCredentialFound(msg)

        with self._connect_lock:
            self._set_status(ConnectionState.RECONNECTING)
            start_time = time.time()
            client = self._client_factory()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

            try:
                logger.debug("Connecting", host=self.host, user=self.user, key=str(key_path))
                client.connect(
                    self.host,
                    username=self.user,
                    key_filename=str(key_path),
                    timeout=self.connect_timeout,
                    banner_timeout=self.connect_timeout,
                    auth_timeout=self.connect_timeout,
                    look_for_keys=False,
                    allow_agent=False,
                )
                transport = client.get_transport()
                if transport is None:
                    msg = f"No transport after connecting to {self.host}"
                    raise TransportError(msg)
                transport.set_keepalive(self.keepalive_interval)
            except TimeoutError as exc:
                client.close()
                self._mark_failed(failure_status)
                logger.warning("Connection timed out", host=self.host)
                msg = f"Timed out connecting to {self.host}"
                raise ConnectTimeout(msg) from exc
            except TransportError:
                client.close()
                self._mark_failed(failure_status)
                raise
            except (paramiko.SSHException, OSError) as exc:
                client.close()
                self._mark_failed(failure_status)
                logger.warning("Connection failed", host=self.host, error=str(exc))
                msg = f"Failed to connect to {self.host}: {exc}"
                raise TransportError(msg) from exc

            with self._lock:
                if self._disposed:
                    client.close()
                    self._set_status(ConnectionState.DISCONNECTED)
                    return
                self._close_client()
                self._cancel_reconnect()
                self._client = client
                self._watch_stop = threading.Event()
                watch_stop = self._watch_stop
                self._set_status(ConnectionState.CONNECTED)

            logger.info(
                "Connected",
                host=self.host,
                user=self.user,
                duration_seconds=round(time.time() - start_time, 3),
            )
            threading.Thread(
                target=self._watch_transport,
                args=(transport, watch_stop),
                name="ssh-transport-watch",
                daemon=True,
            ).start()

    def exec_command(self, command: str) -> str:
        """Run a command remotely and return its standard output.

        A non-zero exit status is only an error when the command also wrote
        to stderr; silent non-zero exits return stdout as usual.

        Args:
            command: Shell command line to run.

        Returns:
            Decoded standard output.

        Raises:
            NotConnected: If the session is not connected.
            CommandFailed: If the command exited non-zero with stderr output.
            CommandTimeout: If the command exceeded the command timeout.
            TransportError: If the channel failed.
        """
        with self._lock:
            client = self._client
            if self._status is not ConnectionState.CONNECTED or client is None:
                msg = f"Session to {self.host} is {self._status.value}"
                raise NotConnected(msg)

        start_time = time.time()
        logger.debug("Running remote command", command=command)
        channel = None
        try:
            _stdin, stdout, stderr = client.exec_command(
                command,
                timeout=self.command_timeout,
            )
            channel = stdout.channel
            raw_out, raw_err = _read_streams(stdout, stderr)
            exit_code = channel.recv_exit_status()
        except TimeoutError as exc:
            _close_channel(channel)
            logger.warning("Remote command timed out", command=command)
            msg = f"Command timed out after {self.command_timeout}s: {command}"
            raise CommandTimeout(msg) from exc
        except (paramiko.SSHException, EOFError, OSError) as exc:
            _close_channel(channel)
            logger.warning("Remote command failed to run", command=command, error=str(exc))
            msg = f"Channel failure running {command!r}: {exc}"
            raise TransportError(msg) from exc

        out = raw_out.decode("utf-8", "replace")
        err = raw_err.decode("utf-8", "replace")

        logger.debug(
            "Remote command completed",
            command=command,
            exit_code=exit_code,
            duration_seconds=round(time.time() - start_time, 3),
        )
        if exit_code != 0 and err.strip():
            raise CommandFailed(exit_code, err)
        return out

    def dispose(self) -> None:
        """Cancel reconnection, close the session and report DISCONNECTED."""
        with self._lock:
            self._disposed = True
            self._cancel_reconnect()
            self._close_client()
            self._set_status(ConnectionState.DISCONNECTED)

    def handle_transport_closed(self) -> None:
        """React to a dropped transport by scheduling a reconnect."""
        with self._lock:
            if self._status is ConnectionState.DISCONNECTED:
                return
            if self._status is ConnectionState.CONNECTED:
                logger.warning("Connection lost", host=self.host)
            self._set_status(ConnectionState.RECONNECTING)
            self._schedule_reconnect()

    def _set_status(self, status: ConnectionState) -> None:
        with self._lock:
            if status is self._status:
                return
            self._status = status
            logger.info("Connection status changed", status=status.value)
            for callback in list(self._observers):
                callback(status)

    def _mark_failed(self, failure_status: ConnectionState) -> None:
        with self._lock:
            if self._disposed:
                failure_status = ConnectionState.DISCONNECTED
            self._set_status(failure_status)

    def _schedule_reconnect(self) -> None:
        with self._lock:
            if self._reconnect_timer is not None:
                return
            timer = self._timer_factory(self.reconnect_delay, self._reconnect)
            timer.daemon = True
            self._reconnect_timer = timer
            timer.start()
            logger.info("Reconnect scheduled", delay_seconds=self.reconnect_delay)

    def _cancel_reconnect(self) -> None:
        with self._lock:
            if self._reconnect_timer is not None:
                self._reconnect_timer.cancel()
                self._reconnect_timer = None

    def _reconnect(self) -> None:
        with self._lock:
            self._reconnect_timer = None
            if self._disposed:
                return
        try:
            self._open(failure_status=ConnectionState.RECONNECTING)
        except SessionError:
            with self._lock:
                if self._disposed:
                    return
                logger.warning("Reconnect failed, retrying", delay_seconds=self.reconnect_delay)
                self._schedule_reconnect()

    def _close_client(self) -> None:
        with self._lock:
            if self._watch_stop is not None:
                self._watch_stop.set()
                self._watch_stop = None
            if self._client is not None:
                self._client.close()
                self._client = None

    def _watch_transport(
        self,
        transport: paramiko.Transport,
        stop: threading.Event,
    ) -> None:
        while not stop.wait(WATCH_INTERVAL):
            if not transport.is_active():
                with self._lock:
                    # A newer connection or dispose() already replaced us
                    if stop.is_set():
                        return
                    self._close_client()
                    self.handle_transport_closed()
                return
