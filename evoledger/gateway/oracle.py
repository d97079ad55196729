"""Oracle Feed — latest values of named external data series."""

from __future__ import annotations

from abc import ABC, abstractmethod

from evoledger.exceptions import OracleUnavailableError


class OracleFeed(ABC):
    @abstractmethod
    async def latest_value(self, series: str) -> int: ...


class StaticOracleFeed(OracleFeed):
    """Serves values set by hand. Unknown series are unavailable."""

    def __init__(self, values: dict[str, int] | None = None) -> None:
        self._values: dict[str, int] = dict(values or {})

    def set_value(self, series: str, value: int) -> None:
        self._values[series] = value

    def clear(self, series: str) -> None:
        self._values.pop(series, None)

    async def latest_value(self, series: str) -> int:
        if series not in self._values:
            raise OracleUnavailableError(f"No value for series '{series}'")
        return self._values[series]
