from enum import Enum
import atexit
from pathlib import Path
from typing import Optional
import os
import threading
import time

from PyQt5.QtCore import QIODevice, QThread
from PyQt5.QtNetwork import QLocalServer, QLocalSocket
from loguru import logger

from schemas import PAYLOAD_TERMINATOR, Settings, encode_payload, settings
from components import CallbackDispatcher

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX platforms
    fcntl = None

try:
    import msvcrt
except ImportError:  # pragma: no cover - POSIX platforms
    msvcrt = None


class InstanceArbiter:
    """
    Decide once per process whether it owns an identity.

    Ownership is an exclusive OS lock on ``{lock_dir}/{name}.lock``. The lock is
    never released by the program; the OS drops it when the process exits or
    crashes, so a leftover file from a dead owner does not block the next launch.
    """

    def __init__(self, name: str, lock_dir: Path):
        self.name = name
        self.lock_path = Path(lock_dir) / f"{name}.lock"
        self._fd: Optional[int] = None
        self._claimed: Optional[bool] = None

    @property
    def claimed(self) -> Optional[bool]:
        return self._claimed

    def try_claim(self) -> bool:
        # only try to get the lock once
        if self._claimed is None:
            self._claimed = self._acquire()
            logger.info(
                f"Instance lock {self.lock_path.name}: "
                f"{'owner' if self._claimed else 'already owned by another process'}"
            )
        return self._claimed

    def _acquire(self) -> bool:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.lock_path), os.O_RDWR | os.O_CREAT, 0o600)
        try:
            self._lock_fd(fd)
        except OSError as exc:
            logger.debug(f"Lock {self.lock_path} is held: {exc}")
            os.close(fd)
            return False
        if fcntl is not None:
            # whole-file lock, safe to rewrite the pid
            os.ftruncate(fd, 0)
            os.write(fd, str(os.getpid()).encode())
        # keep the descriptor open, it holds the lock until the process ends
        self._fd = fd
        return True

    @staticmethod
    def _lock_fd(fd: int):
        if fcntl is not None:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        elif msvcrt is not None:
            msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
        else:  # pragma: no cover - depends on platform
            raise OSError("no file locking available on this platform")


class ChannelState(Enum):
    IDLE = "idle"
    LISTENING = "listening"
    CONNECTED = "connected"
    CLOSED = "closed"


class _AcceptThread(QThread):
    """QThread running the accept loop, so Qt sockets get an event dispatcher"""

    def __init__(self, target):
        super().__init__()
        self._target = target

    def run(self):
        self._target()


class PipeServer:
    """
    Owner side of the channel.

    A worker thread accepts one connection at a time, reads exactly one message,
    closes the connection and only then hands the message to the dispatcher.
    ``close()`` sets the closed flag the worker checks whenever a blocking accept
    returns, which is how a stop is told apart from an accept failure.
    """

    def __init__(
        self,
        name: str,
        dispatcher: CallbackDispatcher,
        settings: Settings = settings,
    ):
        self.name = name
        self.dispatcher = dispatcher
        self.settings = settings
        self._server: Optional[QLocalServer] = None
        self._thread: Optional[_AcceptThread] = None
        self._worker_ident: Optional[int] = None
        self._closed = threading.Event()
        self._ready = threading.Event()
        self._state = ChannelState.IDLE
        self._open_failures = 0
        self.connections_served = 0
        self.endpoints_opened = 0

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def is_listening(self) -> bool:
        return self._state in (ChannelState.LISTENING, ChannelState.CONNECTED)

    def listen(self, wait_ready: bool = True) -> bool:
        """
        Start the accept loop in the background.

        Returns True once the first endpoint is listening. When the endpoint cannot
        be opened yet the worker keeps retrying and False is returned.
        """
        if self._thread is not None:
            return self.is_listening()
        if self._closed.is_set():
            return False
        self._thread = _AcceptThread(self._run)
        self._thread.setObjectName(f"PipeServer-{self.name}")
        # the worker must be stopped before Qt tears the thread object down
        atexit.register(self.close)
        self._thread.start()
        if wait_ready:
            self._ready.wait(self.settings.connect_timeout_ms / 1000)
        return self.is_listening()

    def close(self, timeout: Optional[float] = None):
        if self._closed.is_set():
            return
        self._closed.set()
        thread = self._thread
        if thread is None:
            self._state = ChannelState.CLOSED
            return
        atexit.unregister(self.close)
        if self._worker_ident == threading.get_ident():
            return
        if timeout is None:
            timeout = (
                self.settings.accept_poll_interval_ms + self.settings.read_timeout_ms
            ) / 1000 + 1
        thread.wait(int(timeout * 1000))
        logger.info(f"Stopped listening on {self.name}")

    def __enter__(self):
        self.listen()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ------------------------------------------------------------------
    # worker thread

    def _run(self):
        self._worker_ident = threading.get_ident()
        poll_ms = self.settings.accept_poll_interval_ms
        try:
            while not self._closed.is_set():
                if self._server is None and not self._open_endpoint():
                    self._ready.set()
                    self._closed.wait(poll_ms / 1000)
                    continue
                self._ready.set()
                connected, timed_out = self._server.waitForNewConnection(poll_ms)
                if self._closed.is_set():
                    # close() was called while waiting
                    break
                if not connected:
                    if not timed_out:
                        logger.debug(
                            f"Accept failed on {self.name}: {self._server.errorString()}"
                        )
                        self._close_endpoint()
                    continue
                connection = self._server.nextPendingConnection()
                if connection is None:
                    continue
                try:
                    self._serve(connection)
                except Exception as exc:
                    logger.warning(f"Dropped connection on {self.name}: {exc}")
        except Exception:
            logger.exception(f"Accept loop on {self.name} stopped")
        finally:
            self._close_endpoint()
            self._state = ChannelState.CLOSED
            self._ready.set()

    def _open_endpoint(self) -> bool:
        # the caller owns the identity, so a socket left behind is stale
        QLocalServer.removeServer(self.name)
        server = QLocalServer()
        server.setSocketOptions(QLocalServer.UserAccessOption)
        server.setMaxPendingConnections(1)
        if not server.listen(self.name):
            message = f"Unable to listen on {self.name} ({server.errorString()}), retrying"
            if self._open_failures == 0:
                logger.warning(message)
            else:
                logger.debug(message)
            self._open_failures += 1
            server.close()
            return False
        if self._open_failures:
            logger.info(f"Listening on {self.name} after {self._open_failures} failed attempts")
            self._open_failures = 0
        self._server = server
        self.endpoints_opened += 1
        self._state = ChannelState.LISTENING
        logger.debug(f"Listening on {server.fullServerName()}")
        return True

    def _close_endpoint(self):
        if self._server is not None:
            self._server.close()
            self._server = None

    def _serve(self, connection: QLocalSocket):
        self._state = ChannelState.CONNECTED
        try:
            data = self._read_message(connection)
        finally:
            connection.abort()
            connection.setParent(None)
            self._state = ChannelState.LISTENING
        self.connections_served += 1
        logger.debug(f"Received {len(data)} bytes on {self.name}")
        self.dispatcher.dispatch(data)

    def _read_message(self, connection: QLocalSocket) -> bytes:
        buffer = bytearray()
        deadline = time.monotonic() + self.settings.read_timeout_ms / 1000
        while PAYLOAD_TERMINATOR not in buffer:
            remaining = _remaining_ms(deadline)
            if remaining <= 0 or not connection.waitForReadyRead(remaining):
                break
            buffer += bytes(connection.readAll())
        buffer += bytes(connection.readAll())
        return bytes(buffer)


def _remaining_ms(deadline: float) -> int:
    return max(int((deadline - time.monotonic()) * 1000), 0)


def _connect(name: str, deadline: float, retry_interval_ms: int) -> Optional[QLocalSocket]:
    while True:
        socket = QLocalSocket()
        socket.connectToServer(name, QIODevice.WriteOnly)
        if socket.waitForConnected(_remaining_ms(deadline)):
            return socket
        error = socket.errorString()
        socket.abort()
        remaining = _remaining_ms(deadline)
        if remaining <= 0:
            logger.debug(f"No instance reachable on {name}: {error}")
            return None
        time.sleep(min(retry_interval_ms, remaining) / 1000)


def send_payload(
    name: str,
    arguments: list[str],
    timeout_ms: Optional[int] = None,
    settings: Settings = settings,
) -> bool:
    """
    Forward a command line to the instance listening on ``name``.

    Failures are never raised: the caller is about to exit anyway, so a missed
    notification only means the owner never sees these arguments.

    Returns:
        True if the message was handed to the owner's endpoint
    """
    if timeout_ms is None:
        timeout_ms = settings.connect_timeout_ms
    deadline = time.monotonic() + timeout_ms / 1000
    try:
        data = encode_payload(arguments)
        socket = _connect(name, deadline, settings.connect_retry_interval_ms)
        if socket is None:
            return False
        try:
            if socket.write(data) != len(data):
                logger.debug(f"Short write to {name}: {socket.errorString()}")
                return False
            socket.flush()
            write_deadline = max(deadline, time.monotonic() + 0.1)
            while socket.bytesToWrite() > 0:
                remaining = _remaining_ms(write_deadline)
                if remaining <= 0 or not socket.waitForBytesWritten(remaining):
                    break
            sent = socket.bytesToWrite() == 0
        finally:
            socket.disconnectFromServer()
            if socket.state() != QLocalSocket.UnconnectedState:
                socket.waitForDisconnected(100)
        logger.debug(f"Forwarded {len(arguments)} arguments to {name}: {sent}")
        return sent
    except Exception as exc:
        logger.debug(f"Failed to forward arguments to {name}: {exc}")
        return False
