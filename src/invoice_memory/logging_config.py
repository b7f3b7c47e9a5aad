"""ロガー設定

- コンソール: WARNING 以上
- ファイル: INVOICE_MEMORY_LOG_FILE が設定されていれば DEBUG 以上
"""

import logging
import os

ROOT_LOGGER_NAME = "invoice_memory"

_loggers = {}


def get_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    if name in _loggers:
        return _loggers[name]

    logger = logging.getLogger(name)

    if not logger.handlers:
        logger.setLevel(logging.DEBUG)

        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.WARNING)
        console_handler.setFormatter(logging.Formatter("[%(name)s] %(levelname)s: %(message)s"))
        logger.addHandler(console_handler)

        log_file = os.getenv("INVOICE_MEMORY_LOG_FILE")
        if log_file:
            try:
                file_handler = logging.FileHandler(log_file, encoding="utf-8")
                file_handler.setLevel(logging.DEBUG)
                file_handler.setFormatter(
                    logging.Formatter(
                        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
                        datefmt="%Y-%m-%d %H:%M:%S",
                    )
                )
                logger.addHandler(file_handler)
            except OSError:
                # ログファイルに書けない場合はコンソールのみ
                pass

        logger.propagate = False

    _loggers[name] = logger
    return logger
