from typing import Any, Callable, Optional, Protocol
import threading

from PyQt5.QtCore import QCoreApplication, QObject, QThread, Qt, pyqtSignal
from loguru import logger

from schemas import PayloadDecodeError, decode_payload

PayloadCallback = Callable[[list[str]], Any]


class DispatchTarget(Protocol):
    """Execution context a received payload is delivered on."""

    def post(self, fn: Callable[..., Any], *args: Any) -> None: ...


class QtDispatchTarget(QObject):
    """
    Runs posted callables in the Qt event loop of the thread that created it.

    The signal is connected with a queued connection, so emitting it from the
    channel's worker thread only schedules the call.
    """

    _posted = pyqtSignal(object, object)

    def __init__(self, parent: Optional[QObject] = None):
        super().__init__(parent)
        self._posted.connect(self._invoke, Qt.QueuedConnection)

    def post(self, fn: Callable[..., Any], *args: Any) -> None:
        self._posted.emit(fn, args)

    def _invoke(self, fn: Callable[..., Any], args: tuple):
        try:
            fn(*args)
        except Exception:
            logger.exception("Instance callback failed")


def capture_dispatch_target() -> Optional[QtDispatchTarget]:
    """Dispatch target for the calling thread, if it is the running Qt application thread."""
    app = QCoreApplication.instance()
    if app is None or app.thread() is not QThread.currentThread():
        return None
    return QtDispatchTarget()


class CallbackDispatcher:
    """
    Delivers each decoded payload to the registered callback exactly once.

    Decoding and delivery happen under one lock, so callbacks never overlap even
    if more than one worker ends up feeding the same dispatcher.
    """

    def __init__(
        self,
        callback: PayloadCallback,
        dispatch_target: Optional[DispatchTarget] = None,
    ):
        self.callback = callback
        self.dispatch_target = dispatch_target
        self.last_payload: Optional[list[str]] = None
        self._lock = threading.Lock()

    def dispatch(self, data: bytes) -> bool:
        with self._lock:
            try:
                self.last_payload = decode_payload(data)
            except PayloadDecodeError as exc:
                logger.debug(f"Dropping message: {exc}")
                return False

            arguments = list(self.last_payload)
            if self.dispatch_target is not None:
                self.dispatch_target.post(self.callback, arguments)
                return True
            try:
                self.callback(arguments)
            except Exception:
                logger.exception("Instance callback failed")
            return True
