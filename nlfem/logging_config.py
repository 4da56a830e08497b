"""ロギング設定.

パッケージ内の各モジュールは ``logging.getLogger(__name__)`` で "nlfem" 名前空間の
ロガーを持つ。ライブラリとしてはハンドラを設定しない（ルートで NullHandler のみ）。
アプリケーション側で出力が必要なときに setup_logging を呼ぶ。
"""

from __future__ import annotations

import logging
import sys

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: int = logging.INFO, log_file: str | None = None) -> logging.Logger:
    """"nlfem" 名前空間のロガーを設定する.

    既存のハンドラは取り除いてから付け直す（再設定で出力が重複しない）。

    Args:
        level: ログレベル（logging.DEBUG など）
        log_file: 指定時はファイルにも出力する

    Returns:
        設定済みのパッケージロガー
    """
    logger = logging.getLogger("nlfem")
    logger.setLevel(level)
    for handler in list(logger.handlers):
        if not isinstance(handler, logging.NullHandler):
            logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(_FORMAT, datefmt="%H:%M:%S")

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.debug("Logging initialized.")
    return logger
