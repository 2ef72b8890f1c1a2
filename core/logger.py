from __future__ import annotations

import sys
import logging
import warnings
import traceback
from enum import Enum
from types import FrameType
from typing import cast
from itertools import chain

import loguru
from loguru import logger

from core.types import IntEnum
from config.default import ENVIRONMENT, EnvironmentEnum


class LogLevelEnum(IntEnum):
    """日志级别"""

    CRITICAL = (logging.CRITICAL, "CRITICAL")
    ERROR = (logging.ERROR, "ERROR")
    WARNING = (logging.WARNING, "WARNING")
    INFO = (logging.INFO, "INFO")
    DEBUG = (logging.DEBUG, "DEBUG")
    NOTSET = (logging.NOTSET, "NOTSET")


class LoggerNameEnum(str, Enum):
    root = "root"
    botocore = "botocore"
    aiobotocore = "aiobotocore"
    oss2 = "oss2"
    urllib3 = "urllib3"
    redis = "redis"


# SDK 的 DEBUG 日志过于冗长，最低按 WARNING 输出
NoisyLoggerNames = [
    LoggerNameEnum.botocore.value,
    LoggerNameEnum.aiobotocore.value,
    LoggerNameEnum.urllib3.value,
]


class InterceptHandler(logging.Handler):
    """Logs to loguru from Python logging module"""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = str(record.levelno)

        if record.exc_info and ENVIRONMENT not in [EnvironmentEnum.local.value]:
            # 保持日志一致性
            tb = traceback.extract_tb(record.exc_info[2])
            if tb:
                file_name, line_num, func_name, _ = tb[-1]
                logger.bind(location=f"{file_name}:{func_name}:{line_num}").critical(
                    "".join(traceback.format_exception(*record.exc_info)),
                )
                return

        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:  # noqa: WPS609
            frame = cast(FrameType, frame.f_back)
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level,
            record.getMessage(),
        )


def setup_loguru_logging_intercept(
    level: int = logging.DEBUG,
    modules: tuple | list = (),
) -> None:
    logging.basicConfig(handlers=[InterceptHandler()], level=level)  # noqa
    for logger_name in chain(("",), modules):
        mod_logger = logging.getLogger(logger_name)
        mod_logger.handlers = [InterceptHandler(level=level)]
        mod_logger.setLevel(level)
        mod_logger.propagate = False


def edit_record_and_gen_format(record: loguru.Record) -> str:
    extra = record.get("extra") or {}
    if record["level"].no <= 10:
        # debug
        level_color = "white"
    elif record["level"].no <= 20:
        # info
        level_color = "blue"
    elif record["level"].no <= 30:
        # warning
        level_color = "yellow"
    elif record["level"].no <= 40:
        # error
        level_color = "red"
    else:
        # other
        level_color = "magenta"
    if ENVIRONMENT in [EnvironmentEnum.local.value]:
        format_s = (
            "<green>[{time:YYYY-MM-DD HH:mm:ss}]</green> | "
            + f"<{level_color}>"
            + "<bold>[{level}]</bold>"
            + f"</{level_color}>"
            + " | <fg 0,75,0><underline>{name}:{line}</underline> >> {function}</fg 0,75,0> | <cyan>{message}</cyan>"
        )
    else:
        format_s = "[{time:YYYY-MM-DD HH:mm:ss}] | [{level}] | {name}:{line} >> {function} | {message}"

    if extra:
        format_s += " | {extra}"

    return format_s + "\n{exception}"


def setup_loguru(
    level: LogLevelEnum = LogLevelEnum.INFO,
) -> None:
    logger.remove()
    logger.add(
        sink=sys.stdout,  # type: ignore
        format=edit_record_and_gen_format,  # 日志显示格式
        level=level,  # 日志级别
        enqueue=True,  # 默认是线程安全的，enqueue=True使得多进程安全
        serialize=False,
        backtrace=True,
        diagnose=True,
        colorize=None,
    )

    setup_loguru_logging_intercept(
        level=logging.getLevelName(level),  # type: ignore
        modules=[LoggerNameEnum.oss2.value, LoggerNameEnum.redis.value],
    )
    setup_loguru_logging_intercept(
        level=max(level, logging.WARNING),
        modules=NoisyLoggerNames,
    )

    # disable duplicate logging
    logging.getLogger(LoggerNameEnum.root.value).handlers.clear()  # type: ignore
    # capture warning
    logging.captureWarnings(True)
    showwarning_ = warnings.showwarning

    def showwarning(message, *args, **kwargs):
        logger.warning(message)
        showwarning_(message, *args, **kwargs)

    warnings.showwarning = showwarning
