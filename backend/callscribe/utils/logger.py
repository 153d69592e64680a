# backend/callscribe/utils/logger.py
from loguru import logger
import os
import sys

from callscribe.config import settings

logger.remove()
logger.add(
    sys.stdout,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
    level=settings.LOG_LEVEL.upper(),
)

if settings.LOG_DIR:
    logger.add(
        os.path.join(settings.LOG_DIR, "callscribe_{time}.log"),
        rotation="500 MB",
        retention="10 days",
        level="DEBUG",
    )
