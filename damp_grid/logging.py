from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

import numpy as np
import rerun as rr

from damp_grid.encoding.bitarray import BitArray

LOG_PATH = "damp_grid/log"


@dataclass(frozen=True)
class LogVisual:
    path: str
    payload: object
    timeline: str | None = None
    step: int | None = None


class LogIntervalPolicy:
    def __init__(self, intervals: Mapping[str, int], *, default_interval: int = 1) -> None:
        self._intervals: dict[str, int] = {}
        for event, value in intervals.items():
            interval = int(value)
            if interval <= 0:
                raise ValueError("interval must be positive")
            self._intervals[str(event)] = interval
        self._default_interval = int(default_interval)
        if self._default_interval <= 0:
            raise ValueError("default_interval must be positive")
        self._counters: dict[str, int] = {}

    def should_log(self, event: str) -> bool:
        interval = self._intervals.get(event, self._default_interval)
        if interval <= 1:
            return True
        count = self._counters.get(event, 0)
        self._counters[event] = count + 1
        return count % interval == 0

    def reset(self) -> None:
        self._counters.clear()


class DampLogger:
    """Structured event log printed to the console and mirrored to rerun.

    The rerun sink stays silent until :meth:`init_rerun` is called, so library
    code can log freely without spawning a viewer.
    """

    def __init__(self, app_id: str = "damp_grid", base_path: str = LOG_PATH, *, console: bool = True) -> None:
        self._app_id = app_id
        self._base_path = base_path
        self._console = console
        self._rerun = False
        self._interval_policy: LogIntervalPolicy | None = None

    @property
    def rerun_enabled(self) -> bool:
        return self._rerun

    def init_rerun(self, app_id: str | None = None, *, spawn: bool = True) -> None:
        if app_id is not None:
            self._app_id = app_id
        if not rr.is_enabled():
            rr.init(self._app_id, spawn=spawn)
        self._rerun = True

    def set_console(self, enabled: bool) -> None:
        self._console = bool(enabled)

    def _console_log(self, message: str) -> None:
        if self._console:
            print(message)

    @staticmethod
    def _format_value(value: Any, *, max_items: int = 8, max_chars: int = 200) -> str:
        if value is None:
            return "None"
        if isinstance(value, (bool, np.bool_)):
            return "true" if value else "false"
        if isinstance(value, (int, np.integer)):
            return str(int(value))
        if isinstance(value, (float, np.floating)):
            return f"{float(value):.6g}"
        if isinstance(value, str):
            return value if len(value) <= max_chars else f"{value[:max_chars]}..."
        if isinstance(value, BitArray):
            length = len(value)
            ones = value.count()
            if length <= 64:
                return f"BitArray(len={length}, ones={ones}, bits={value.to01()})"
            return f"BitArray(len={length}, ones={ones})"
        if isinstance(value, dict):
            items = list(value.items())
            parts = [f"{k}={DampLogger._format_value(v)}" for k, v in items[:max_items]]
            if len(items) > max_items:
                parts.append("...")
            return "{" + ", ".join(parts) + "}"
        if isinstance(value, (list, tuple)):
            seq = list(value)
            parts = [DampLogger._format_value(v) for v in seq[:max_items]]
            if len(seq) > max_items:
                parts.append("...")
            if isinstance(value, list):
                return "[" + ", ".join(parts) + "]"
            return "(" + ", ".join(parts) + ")"
        if isinstance(value, np.ndarray):
            return f"ndarray(shape={value.shape}, dtype={value.dtype})"
        text = repr(value)
        return text if len(text) <= max_chars else f"{text[:max_chars]}..."

    @staticmethod
    def _coerce_rr_value(value: Any) -> Any:
        if value is None:
            return "None"
        if isinstance(value, (bool, int, float, str)):
            return value
        if isinstance(value, (np.integer, np.floating)):
            return value.item()
        if isinstance(value, (list, tuple)):
            if all(isinstance(item, (bool, int, float, str)) for item in value):
                return list(value)
            return DampLogger._format_value(value)
        return DampLogger._format_value(value)

    def _coerce_anyvalues(self, data: Mapping[str, Any]) -> Mapping[str, Any]:
        return {key: self._coerce_rr_value(value) for key, value in data.items()}

    def configure_intervals(self, intervals: Mapping[str, int], *, default_interval: int = 1) -> None:
        self._interval_policy = LogIntervalPolicy(intervals, default_interval=default_interval)

    def reset_intervals(self) -> None:
        self._interval_policy = None

    def should_log(self, event: str) -> bool:
        if self._interval_policy is None:
            return True
        return self._interval_policy.should_log(event)

    def event(
        self,
        event: str,
        *,
        section: str,
        data: Mapping[str, Any] | None = None,
        path: str | None = None,
        visuals: Sequence[LogVisual] | None = None,
        force: bool = False,
    ) -> None:
        if not section:
            raise ValueError("section must be provided")
        if not force and not self.should_log(event):
            return
        if data:
            details = " ".join(f"{k}={self._format_value(v)}" for k, v in data.items())
            message = f"{event} {details}"
        else:
            message = event
        message = f"{message} [{section}]"
        self._console_log(message)
        if not self._rerun:
            return
        base_path = path or self._base_path
        rr.log(base_path, rr.TextLog(message))
        if data:
            anyvalues_path = f"{base_path}/{event}"
            rr.log(anyvalues_path, rr.AnyValues(**self._coerce_anyvalues(data)))
        if visuals:
            for visual in visuals:
                if visual.timeline is not None and visual.step is not None:
                    rr.set_time(visual.timeline, sequence=visual.step)
                rr.log(visual.path, visual.payload)

    def visual_image(self, path: str, image) -> LogVisual:
        return LogVisual(path=path, payload=rr.Image(np.asarray(image)))

    def visual_scalars(
        self,
        path: str,
        values: Mapping[str, float],
        *,
        step: int,
        timeline: str,
    ) -> list[LogVisual]:
        return [
            LogVisual(
                path=f"{path}/{name}",
                payload=rr.Scalars(float(value)),
                timeline=timeline,
                step=step,
            )
            for name, value in values.items()
        ]


LOGGER = DampLogger()
