"""Agent entry point."""
import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

from .agent import Agent
from .config import settings
from .services.updater import active_release_dir

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
PACKAGE_NAME = "cybershield_agent"


def configure_logging(level: str = "INFO", log_file: str = None):
    """Configure root logging once for the process."""
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )
    # Keep third-party chatter down
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)


def release_to_launch(install_dir: str, running_root: Optional[str] = None) -> Optional[str]:
    """Active release directory when it ships the agent package and is not the code running now."""
    release = active_release_dir(install_dir)
    if release is None or not os.path.isdir(os.path.join(release, PACKAGE_NAME)):
        return None
    if running_root is None:
        running_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    if os.path.realpath(running_root) == release:
        return None
    return release


def launch_release(release: str):
    """Replace this process with the agent from ``release``."""
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(p for p in (release, env.get("PYTHONPATH")) if p)
    os.execve(sys.executable, [sys.executable, "-m", f"{PACKAGE_NAME}.main", *sys.argv[1:]], env)


def main() -> int:
    configure_logging(settings.log_level, settings.log_file)
    release = release_to_launch(settings.install_dir)
    if release is not None:
        logger.info(f"Switching to installed release {release}")
        launch_release(release)

    agent = Agent(settings)
    try:
        return asyncio.run(agent.run())
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
