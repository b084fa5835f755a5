"""Trace de decisões persistido em `inbound_jobs.context_sources`."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

from app.core.clock import isoformat, utcnow


class DecisionTrace:
    """Lista ordenada de eventos; cada um recebe o instante `at` em ISO-8601."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._events: list[dict[str, Any]] = []

    def add(self, source: str, **fields: Any) -> dict[str, Any]:
        event = {"at": isoformat(self._clock()), "source": source, **fields}
        self._events.append(event)
        return event

    def decision(self, step: str, **fields: Any) -> dict[str, Any]:
        return self.add("decision_trace", step=step, **fields)

    def tool_call(
        self,
        name: str,
        *,
        ok: bool,
        status: int | None = None,
        error: str | None = None,
    ) -> dict[str, Any]:
        fields: dict[str, Any] = {"name": name, "ok": ok}
        if status is not None:
            fields["status"] = status
        if error is not None:
            fields["error"] = error
        return self.add("tool_call", **fields)

    def steps(self) -> list[str]:
        return [event["step"] for event in self._events if "step" in event]

    def to_list(self) -> list[dict[str, Any]]:
        return [dict(event) for event in self._events]

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self):
        return iter(self._events)
