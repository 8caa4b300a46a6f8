"""Global configuration — loaded from environment variables."""

import signal
import tempfile
from pathlib import Path

from pydantic_settings import BaseSettings


class ForkqSettings(BaseSettings):
    # Semaphore files
    lock_dir: Path = Path(tempfile.gettempdir()) / "forkq"
    lock_mode: int = 0o644
    lock_poll_interval: float = 0.01  # seconds between slot probes

    # Scheduling
    default_max_workers: int = 20
    kill_signal: int = int(signal.SIGTERM)

    # Off when the controller lives outside the main thread; reaping then
    # only happens through wait()/join()
    install_sigchld_handler: bool = True

    log_level: str = "INFO"

    model_config = {"env_prefix": "FORKQ_"}


settings = ForkqSettings()
