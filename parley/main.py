"""
Parley - Matrix ⇄ LLM chat bridge
Entry point and orchestration.

Startup sequence:
  1. Load config.yaml
  2. Configure logging
  3. Build the thread store, completion client and Matrix interface
  4. Wire them together through the dispatcher
  5. Run the Matrix sync loop
  6. Await shutdown signals

Conversation state lives in memory only and is lost on restart.
"""

import asyncio
import logging
import logging.handlers
import signal
import sys
from pathlib import Path
from typing import Optional

import yaml

from parley.core.completion import DEFAULT_MODEL, DEFAULT_SYSTEM_PROMPT, CompletionClient, CompletionConfig
from parley.core.dispatcher import Dispatcher
from parley.core.thread_store import ThreadStore
from parley.infra import prompt_loader
from parley.infra.paths import CONFIG_PATH, CRYPTO_DB_PATH, LOG_DIR
from parley.interfaces.matrix_thread import DEFAULT_PICKLE_KEY, MatrixConfig, MatrixThread


# ---------------------------------------------------------------------------
# Configuration loading
# ---------------------------------------------------------------------------

def load_config(path: Path = CONFIG_PATH) -> dict:
    if not path.exists():
        print(f"ERROR: {path} not found. Copy config.yaml.example and fill in your settings.")
        sys.exit(1)
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _require(section: dict, key: str, prefix: str) -> str:
    value = section.get(key)
    if not value:
        raise ValueError(f"config.yaml: '{prefix}.{key}' is required")
    return value


def build_matrix_config(cfg: dict) -> MatrixConfig:
    raw = cfg.get("matrix") or {}
    homeserver = _require(raw, "homeserver", "matrix")
    user_id = _require(raw, "user_id", "matrix")
    if not (raw.get("access_token") or raw.get("password")):
        raise ValueError("config.yaml: 'matrix.access_token' or 'matrix.password' is required")
    return MatrixConfig(
        homeserver=homeserver,
        user_id=user_id,
        access_token=raw.get("access_token") or "",
        device_id=raw.get("device_id") or "",
        password=raw.get("password") or "",
        crypto_db_path=Path(raw.get("crypto_db_path") or CRYPTO_DB_PATH),
        pickle_key=raw.get("pickle_key") or DEFAULT_PICKLE_KEY,
    )


def build_completion_config(cfg: dict) -> CompletionConfig:
    raw = cfg.get("openai") or {}
    return CompletionConfig(
        api_key=_require(raw, "api_key", "openai"),
        model=raw.get("model") or DEFAULT_MODEL,
        base_url=raw.get("base_url") or None,
        system_prompt=prompt_loader.load_system_prompt(
            raw.get("system_prompt"), raw.get("system_prompt_file"), DEFAULT_SYSTEM_PROMPT,
        ),
        max_tokens=raw.get("max_tokens"),
        temperature=raw.get("temperature"),
        n=int(raw.get("n", 1)),
        timeout=float(raw.get("timeout", 60.0)),
    )


def build_thread_store(cfg: dict) -> ThreadStore:
    raw = cfg.get("store") or {}
    idle_minutes: Optional[float] = raw.get("max_idle_minutes")
    return ThreadStore(
        max_conversations=raw.get("max_conversations"),
        max_idle_seconds=idle_minutes * 60 if idle_minutes else None,
    )


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def setup_logging(cfg: dict) -> None:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    level_name = (cfg.get("logging") or {}).get("level", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = logging.Formatter(
        "%(asctime)s %(levelname)-8s %(name)-20s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(fmt)
    console.setLevel(level)

    fh = logging.handlers.TimedRotatingFileHandler(
        LOG_DIR / "parley.log",
        when="midnight",
        backupCount=14,
        encoding="utf-8",
    )
    fh.setFormatter(fmt)
    fh.setLevel(logging.DEBUG)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(console)
    root.addHandler(fh)

    # mautrix and httpx are chatty at DEBUG.
    logging.getLogger("mau").setLevel(max(level, logging.INFO))
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------

class ShutdownCoordinator:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    def request_shutdown(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def build_components(cfg: dict) -> tuple[MatrixThread, Dispatcher]:
    matrix = MatrixThread(build_matrix_config(cfg))
    dispatcher = Dispatcher(
        bot_user_id=matrix.user_id,
        store=build_thread_store(cfg),
        completion=CompletionClient(build_completion_config(cfg)),
        transport=matrix,
    )
    matrix.inject_dispatcher(dispatcher)
    return matrix, dispatcher


async def main() -> None:
    cfg = load_config()
    setup_logging(cfg)
    logger = logging.getLogger("main")
    logger.info("Parley starting up")

    try:
        matrix, _dispatcher = build_components(cfg)
    except (ValueError, FileNotFoundError) as exc:
        logger.error("Invalid configuration: %s", exc)
        sys.exit(1)

    shutdown = ShutdownCoordinator()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.request_shutdown)

    matrix_task = asyncio.create_task(matrix.run(), name="matrix")
    # A Matrix task that exits on its own (bad credentials, fatal error)
    # shuts the process down too.
    matrix_task.add_done_callback(lambda _t: shutdown.request_shutdown())

    logger.info("All components started. Awaiting shutdown signal.")
    await shutdown.wait()
    logger.info("Shutdown requested - stopping components gracefully")

    matrix.stop()
    if not matrix_task.done():
        matrix_task.cancel()
    try:
        await asyncio.wait_for(asyncio.gather(matrix_task, return_exceptions=True), timeout=10.0)
    except asyncio.TimeoutError:
        logger.warning("Matrix task did not stop within 10 s - forcing exit")

    logger.info("Parley shutdown complete")


def run() -> None:
    """Entry point for the `parley` console script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
