from __future__ import annotations
from typing import TYPE_CHECKING, Optional
import sys

from loguru import logger

from schemas import Settings, settings as default_settings
from components import (
    CallbackDispatcher,
    DispatchTarget,
    PayloadCallback,
    capture_dispatch_target,
)
from core import InstanceArbiter, PipeServer, send_payload
from utils import build_endpoint_name, build_pipe_name, get_running_process_hash

if TYPE_CHECKING:
    from collections.abc import Sequence


class ApplicationActivator:
    """
    Keeps one running instance per user, machine and executable.

    Create one activator at startup and keep it for the lifetime of the process:

        activator = ApplicationActivator()
        if not activator.launch_or_return(on_other_instance, sys.argv):
            sys.exit(0)

    The first process to call ``launch_or_return`` becomes the owner and starts
    listening; every later launch forwards its command line to the owner and is
    told to exit.
    """

    def __init__(
        self,
        unique_name: str | None = None,
        settings: Settings | None = None,
        dispatch_target: DispatchTarget | None = None,
    ):
        self.settings = settings or default_settings
        self._unique_name = unique_name or None
        self._identity_consumed = False
        self._dispatch_target = dispatch_target
        self._arbiter: Optional[InstanceArbiter] = None
        self._server: Optional[PipeServer] = None
        self._dispatcher: Optional[CallbackDispatcher] = None

    @property
    def unique_name(self) -> str:
        """identity of the application, fixed from the first time it is read"""
        if self._unique_name is None:
            self._unique_name = get_running_process_hash()
        self._identity_consumed = True
        return self._unique_name

    @unique_name.setter
    def unique_name(self, value: str):
        if self._identity_consumed:
            raise RuntimeError("unique_name cannot change once it has been used")
        if not value:
            raise ValueError("unique_name must not be empty")
        self._unique_name = value

    @property
    def mutex_name(self) -> str:
        return build_endpoint_name(self.settings.mutex_prefix, self.unique_name)

    @property
    def pipe_name(self) -> str:
        return build_pipe_name(self.settings.pipe_prefix, self.unique_name)

    @property
    def is_first_instance(self) -> bool | None:
        """ownership decided by launch_or_return, None before the first call"""
        if self._arbiter is None:
            return None
        return self._arbiter.claimed

    @property
    def server(self) -> PipeServer | None:
        return self._server

    def launch_or_return(
        self, callback: PayloadCallback, args: Sequence[str] | None = None
    ) -> bool:
        """
        Claim ownership or hand the command line over to the owner.

        Params:
            callback: called with the argument list of every later launch
            args: command line to forward when this is not the first instance,
                defaults to sys.argv

        Returns:
            True - this process owns the identity and should keep running
            False - another instance received the arguments, this process should exit
        """
        if not callable(callback):
            raise TypeError("callback must be callable")

        if self._arbiter is None:
            self._arbiter = InstanceArbiter(self.mutex_name, self.settings.lock_dir)

        if self._arbiter.try_claim():
            self._start_server(callback)
            return True

        arguments = list(sys.argv if args is None else args)
        # a missed notification is not an error for a process that is exiting
        send_payload(
            self.pipe_name,
            arguments,
            timeout_ms=self.settings.connect_timeout_ms,
            settings=self.settings,
        )
        return False

    def stop_listening(self):
        """Stop accepting forwarded launches. Ownership is kept until the process exits."""
        if self._server is not None:
            self._server.close()

    def _start_server(self, callback: PayloadCallback):
        if self._server is not None and not self._server.closed:
            # listener already running, only the callback changes
            self._dispatcher.callback = callback
            return
        if self._dispatcher is None:
            dispatch_target = self._dispatch_target or capture_dispatch_target()
            self._dispatcher = CallbackDispatcher(callback, dispatch_target)
        else:
            # restarted after stop_listening
            self._dispatcher.callback = callback
        self._server = PipeServer(self.pipe_name, self._dispatcher, self.settings)
        if self._server.listen():
            logger.info(f"First instance, listening for other launches on {self.pipe_name}")
        else:
            logger.warning(f"First instance, but {self.pipe_name} is not listening yet")
