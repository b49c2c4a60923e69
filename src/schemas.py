from pathlib import Path
from typing import Optional
import tempfile

from pydantic import BaseModel, ConfigDict, ValidationError
from loguru import logger


PAYLOAD_TERMINATOR = b"\n"


class PayloadDecodeError(ValueError):
    """raised when bytes read from the channel are not a valid payload"""


class Settings(BaseModel):
    """
    Params:
        connect_timeout_ms: int - how long a challenger tries to reach the owner
        read_timeout_ms: int - how long the owner waits for a client's message
        accept_poll_interval_ms: int - accept wait slice, the closed flag is checked between slices
        connect_retry_interval_ms: int - pause between client connection attempts
        mutex_prefix: str - prefix of the lock file name
        pipe_prefix: str - prefix of the local socket name
        lock_dir: Path - where lock files are created
    """

    connect_timeout_ms: int = 3000
    read_timeout_ms: int = 3000
    accept_poll_interval_ms: int = 250
    connect_retry_interval_ms: int = 50
    mutex_prefix: str = "Mutex"
    pipe_prefix: str = "Pipe"
    # dirs
    lock_dir: Path = Path(tempfile.gettempdir())
    user_app_settings_dir: Path = Path.home() / ".SingleInstanceHelper"
    usr_settings_file: Path = user_app_settings_dir / "settings" / "settings.json"
    user_logs_dir: Path = user_app_settings_dir / "logs"

    def process(self):
        self.lock_dir = Path(self.lock_dir).expanduser().resolve()
        self.user_app_settings_dir = Path(self.user_app_settings_dir).expanduser()
        self.usr_settings_file = Path(self.usr_settings_file).expanduser()
        self.user_logs_dir = Path(self.user_logs_dir).expanduser()

    @classmethod
    def get_user_settings(cls, path: Path):
        with path.open("r", encoding="utf-8") as f:
            settings_data = f.read()

            return cls.model_validate_json(settings_data)

    @classmethod
    def load_settings(cls, path: Optional[Path] = None):
        settings_file = path or cls.model_fields["usr_settings_file"].default
        # no user file - defaults
        if not Path(settings_file).exists():
            model = cls()
            model.process()
            return model
        try:
            model = cls.get_user_settings(Path(settings_file))
            model.process()

        except (OSError, ValueError) as e:
            logger.error(e)
            logger.critical(f"Ignoring invalid settings file {settings_file}")
            model = cls()
            model.process()

        return model


settings = Settings.load_settings()


class InvocationPayload(BaseModel):
    """Command line forwarded from a challenger to the owner"""

    model_config = ConfigDict(extra="forbid")

    command_line_arguments: list[str] = []


def encode_payload(arguments: list[str]) -> bytes:
    payload = InvocationPayload(command_line_arguments=list(arguments))
    return payload.model_dump_json().encode("utf-8") + PAYLOAD_TERMINATOR


def decode_payload(data: bytes) -> list[str]:
    """
    Parse one message read from the channel.

    Raises:
        PayloadDecodeError: empty input, bad UTF-8, bad JSON or unexpected schema
    """
    body = bytes(data).rstrip(PAYLOAD_TERMINATOR)
    if not body:
        raise PayloadDecodeError("empty message")
    try:
        text = body.decode("utf-8")
        payload = InvocationPayload.model_validate_json(text)
    except UnicodeDecodeError as exc:
        raise PayloadDecodeError(f"message is not UTF-8: {exc}") from exc
    except ValidationError as exc:
        raise PayloadDecodeError(f"malformed message: {exc}") from exc
    return list(payload.command_line_arguments)
