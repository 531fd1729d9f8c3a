"""
Scheduled task definitions and their flat KEY=VALUE persistence file.

File layout:

    # comment lines
    TASKS_COUNT=2
    TASK_1_NAME=update-cycles
    TASK_1_TYPE=update
    ...

Task indexes are 1-based. Timestamps are RFC 3339.
"""

import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from core.cycle import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

TASK_TYPES = ("update", "new")
INTERVAL_UNITS = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
}


@dataclass
class ScheduledTask:
    """One recurring job: an update pass or a new-cycle creation."""
    name: str
    type: str
    interval_value: int = 0
    interval_unit: str = "minutes"
    enabled: bool = True
    specific_time: str = ""
    exchange: str = ""
    buy_offset: float = 0.0
    sell_offset: float = 0.0
    percent: float = 0.0
    last_run_time: Optional[datetime] = None
    next_scheduled_at: Optional[datetime] = None

    @property
    def interval(self) -> timedelta:
        return parse_interval(self.interval_value, self.interval_unit)

    def overrides(self) -> Dict[str, float]:
        """Non-zero per-task parameters for new-cycle tasks."""
        if self.type != "new":
            return {}
        values = {"buy_offset": self.buy_offset, "sell_offset": self.sell_offset, "percent": self.percent}
        return {key: value for key, value in values.items() if value}


def parse_interval(value: int, unit: str) -> timedelta:
    """``value`` × ``unit``; unknown units give a zero interval."""
    step = INTERVAL_UNITS.get(unit)
    if step is None or value <= 0:
        return timedelta(0)
    return step * value


def format_interval(interval: timedelta):
    """Largest whole unit describing ``interval``, as (value, unit)."""
    minutes = int(interval.total_seconds() // 60)
    if minutes < 60:
        return minutes, "minutes"
    hours = minutes // 60
    if hours < 24:
        return hours, "hours"
    return hours // 24, "days"


def format_number(value: float) -> str:
    """Shortest text that parses back to the same float; whole numbers drop the ".0"."""
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def task_lines(tasks: List[ScheduledTask]) -> List[str]:
    lines = [
        "# Scheduled tasks",
        "# Format: TASK_[index]_[property]=[value]",
        f"TASKS_COUNT={len(tasks)}",
    ]
    for index, task in enumerate(tasks, start=1):
        prefix = f"TASK_{index}_"
        lines.append(f"{prefix}NAME={task.name}")
        lines.append(f"{prefix}TYPE={task.type}")
        lines.append(f"{prefix}ENABLED={'true' if task.enabled else 'false'}")
        lines.append(f"{prefix}INTERVAL_VALUE={task.interval_value}")
        lines.append(f"{prefix}INTERVAL_UNIT={task.interval_unit}")
        if task.specific_time:
            lines.append(f"{prefix}SPECIFIC_TIME={task.specific_time}")
        if task.exchange:
            lines.append(f"{prefix}EXCHANGE={task.exchange}")
        if task.type == "new":
            if task.buy_offset:
                lines.append(f"{prefix}BUY_OFFSET={format_number(task.buy_offset)}")
            if task.sell_offset:
                lines.append(f"{prefix}SELL_OFFSET={format_number(task.sell_offset)}")
            if task.percent:
                lines.append(f"{prefix}PERCENT={format_number(task.percent)}")
        if task.next_scheduled_at is not None:
            lines.append(f"{prefix}NEXT_SCHEDULED_AT={format_timestamp(task.next_scheduled_at)}")
    return lines


def save_tasks(path: str, tasks: List[ScheduledTask]) -> None:
    """Write ``tasks`` atomically (temp file + rename)."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    temp_fd, temp_path = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}_", suffix=".tmp")
    try:
        with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
            f.write("\n".join(task_lines(tasks)) + "\n")
        os.replace(temp_path, target)
    except OSError:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise
    logger.debug(f"Saved {len(tasks)} tasks to {target}")


def parse_env_lines(text: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


def _parse_bool(value: Optional[str], default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "t", "yes", "y")


def _parse_int(value: Optional[str], default: int = 0) -> int:
    try:
        return int(value) if value not in (None, "") else default
    except ValueError:
        return default


def _parse_float(value: Optional[str]) -> float:
    try:
        return float(value) if value not in (None, "") else 0.0
    except ValueError:
        return 0.0


def load_tasks(path: str) -> List[ScheduledTask]:
    """
    Read tasks from ``path``.

    A missing file, an unreadable file or a missing TASKS_COUNT yields an
    empty list. Unknown task types are skipped.
    """
    source = Path(path)
    if not source.exists():
        return []
    try:
        values = parse_env_lines(source.read_text(encoding="utf-8"))
    except OSError as e:
        logger.error(f"Cannot read tasks file {source}: {e}")
        return []

    count = _parse_int(values.get("TASKS_COUNT"), -1)
    if count < 0:
        logger.error(f"TASKS_COUNT missing or invalid in {source}")
        return []

    tasks = []
    for index in range(1, count + 1):
        prefix = f"TASK_{index}_"
        task_type = values.get(prefix + "TYPE", "")
        if task_type not in TASK_TYPES:
            logger.warning(f"Skipping task {index} with unknown type {task_type!r}")
            continue
        unit = values.get(prefix + "INTERVAL_UNIT", "minutes")
        task = ScheduledTask(
            name=values.get(prefix + "NAME", f"task-{index}"),
            type=task_type,
            enabled=_parse_bool(values.get(prefix + "ENABLED")),
            interval_value=_parse_int(values.get(prefix + "INTERVAL_VALUE")),
            interval_unit=unit if unit in INTERVAL_UNITS else "minutes",
            specific_time=values.get(prefix + "SPECIFIC_TIME", ""),
            exchange=values.get(prefix + "EXCHANGE", "").upper(),
            next_scheduled_at=parse_timestamp(values.get(prefix + "NEXT_SCHEDULED_AT")),
        )
        if task_type == "new":
            task.buy_offset = _parse_float(values.get(prefix + "BUY_OFFSET"))
            task.sell_offset = _parse_float(values.get(prefix + "SELL_OFFSET"))
            task.percent = _parse_float(values.get(prefix + "PERCENT"))
        tasks.append(task)
    return tasks
