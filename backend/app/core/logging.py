"""Configuração de logging estruturado para a aplicação."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

batch_id_ctx: ContextVar[str | None] = ContextVar("batch_id", default=None)

_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}


class JSONFormatter(logging.Formatter):
    """Serializa cada registro como uma linha JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        batch_id = batch_id_ctx.get()
        if batch_id:
            payload["batch_id"] = batch_id

        payload.update(
            (key, value) for key, value in record.__dict__.items() if key not in _STANDARD_ATTRS
        )

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def _rotating_handler(path: str) -> RotatingFileHandler:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        target,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    handler.setFormatter(JSONFormatter())
    return handler


def configure_logging(
    level: int = logging.INFO,
    *,
    log_file: str | None = None,
    per_logger_files: dict[str, str] | None = None,
) -> None:
    """Configura o logger raiz com saída JSON e, opcionalmente, arquivos rotativos."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    stream = logging.StreamHandler()
    stream.setFormatter(JSONFormatter())
    root_logger.addHandler(stream)

    if log_file:
        try:
            root_logger.addHandler(_rotating_handler(log_file))
        except OSError:
            root_logger.exception(
                "logging.file_handler_failed", extra={"log_file": log_file}
            )

    for logger_name, file_path in (per_logger_files or {}).items():
        try:
            logging.getLogger(logger_name).addHandler(_rotating_handler(file_path))
        except OSError:
            root_logger.exception(
                "logging.dedicated_handler_failed",
                extra={"target_logger": logger_name, "file": file_path},
            )


def resolve_log_level(value: str | int | None, *, default: int = logging.INFO) -> int:
    """Converte valores configuráveis (nome ou número) em constantes de logging."""
    if isinstance(value, int):
        return value
    if not isinstance(value, str) or not value.strip():
        return default
    candidate = value.strip()
    if candidate.isdigit():
        return int(candidate)
    mapped = logging.getLevelName(candidate.upper())
    return mapped if isinstance(mapped, int) else default


def get_logger(name: str) -> logging.Logger:
    """Retorna um logger filho com o nome solicitado."""
    return logging.getLogger(name)


def log_event(logger: logging.Logger, message: str, **extra: Any) -> None:
    """Emite um evento `info` com campos adicionais serializados no JSON."""
    if extra:
        logger.info(message, extra=extra)
    else:
        logger.info(message)


@contextmanager
def bind_batch(batch_id: str) -> Iterator[None]:
    """Associa o batch_id a todos os registros emitidos dentro do bloco."""
    token = batch_id_ctx.set(batch_id)
    try:
        yield
    finally:
        batch_id_ctx.reset(token)
