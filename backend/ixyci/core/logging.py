import os
import sys
from loguru import logger
from ixyci.core.config import settings

# Configure Loguru
logger.remove()
logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{extra[name]}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level=settings.LOG_LEVEL,
)
# Kept apart from LOG_DIRECTORY, which is served publicly under /logs
logger.add(os.path.join(settings.SERVICE_LOG_DIRECTORY, "ixy-ci.log"), rotation="500 MB", level="DEBUG")
# Leaked VMs and lost reports need an operator
logger.add(
    os.path.join(settings.SERVICE_LOG_DIRECTORY, "operator-events.log"),
    rotation="50 MB",
    level="WARNING",
    filter=lambda record: "event" in record["extra"],
    format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {extra[event]} | {message}",
)
logger.configure(extra={"name": "ixyci"})

def get_logger(name: str):
    return logger.bind(name=name)
