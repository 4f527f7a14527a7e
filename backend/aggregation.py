"""
Time-windowed aggregates over stored telemetry samples.

Samples are bucketed in SQL by local hour (today) or local calendar date
(week, month) and averaged per status code, then merged into a zero-filled
skeleton so that every hour or day of the period is present. Bucketing
shifts the stored UTC timestamps by the zone's UTC offset with SQLite's
``strftime(fmt, ts, '+N minutes')``; the offset in force at the start of
the window is used for the whole window, which is exact for fixed-offset
zones.

The energy integral is a left Riemann sum over consecutive samples where
the plug is switched on. The first qualifying sample of the day has no
previous timestamp and contributes nothing, so the result slightly
undercounts the first interval.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import DateTime, and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from models import StatusEntry, TelemetrySample
from tuya_client import SCALED_CODES

logger = logging.getLogger(__name__)

CHART_CODES = ("cur_power", "cur_current", "cur_voltage")

# "+05:30", "-0800", "UTC+5", "05:30" (a '+' arrives as a space in query strings)
FIXED_OFFSET_RE = re.compile(r"^(?:UTC|GMT)?\s*([+-]?)(\d{1,2})(?::?(\d{2}))?$", re.IGNORECASE)

MS_PER_HOUR = 3_600_000


@dataclass(frozen=True)
class Window:
    """A local-calendar period expressed as naive UTC bounds for the store.

    Attributes:
        start: Inclusive lower bound (naive UTC).
        end: Exclusive upper bound (naive UTC).
        offset_minutes: UTC offset of the zone at the start of the window.
        today: The local calendar date the window ends on.
    """

    start: datetime
    end: datetime
    offset_minutes: int
    today: date

    @property
    def modifier(self) -> str:
        return f"{self.offset_minutes:+d} minutes"


def resolve_timezone(name: Optional[str], default: str = "UTC") -> tzinfo:
    """Parse a timezone given as UTC, a fixed offset or an IANA name.

    Raises:
        ValueError: If the value is not a recognised zone or offset.
    """
    value = (name or "").strip() or default
    if value.upper() in ("UTC", "GMT", "Z"):
        return timezone.utc

    match = FIXED_OFFSET_RE.match(value)
    if match:
        sign, hours, minutes = match.groups()
        hours, minutes = int(hours), int(minutes or 0)
        if hours > 14 or minutes >= 60:
            raise ValueError(f"Invalid UTC offset: {value}")
        offset = timedelta(hours=hours, minutes=minutes)
        return timezone(-offset if sign == "-" else offset)

    try:
        return ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {value}") from e


def local_window(tz: tzinfo, days: int, now: Optional[datetime] = None) -> Window:
    """Window covering ``days`` local calendar days ending today inclusive."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    today = now.astimezone(tz).date()
    start_local = datetime.combine(today - timedelta(days=days - 1), time.min, tzinfo=tz)
    end_local = datetime.combine(today + timedelta(days=1), time.min, tzinfo=tz)

    return Window(
        start=start_local.astimezone(timezone.utc).replace(tzinfo=None),
        end=end_local.astimezone(timezone.utc).replace(tzinfo=None),
        offset_minutes=int(start_local.utcoffset().total_seconds() // 60),
        today=today,
    )


def _zero_bucket() -> dict:
    return {"power": 0, "current": 0, "voltage": 0}


def _scale(averages: dict) -> dict:
    """Pivot per-code averages into one bucket row, applying the /10 scaling."""

    def scaled(code):
        value = averages.get(code) or 0
        return round(value / SCALED_CODES.get(code, 1), 2)

    return {
        "power": scaled("cur_power"),
        "current": scaled("cur_current"),
        "voltage": scaled("cur_voltage"),
    }


async def _bucket_averages(db: AsyncSession, window: Window, bucket_format: str) -> dict:
    """Average each chart code per bucket key inside the window."""
    bucket = func.strftime(bucket_format, TelemetrySample.timestamp, window.modifier).label("bucket")
    stmt = (
        select(bucket, StatusEntry.code, func.avg(StatusEntry.value).label("average"))
        .select_from(TelemetrySample)
        .join(StatusEntry, StatusEntry.sample_id == TelemetrySample.id)
        .where(
            TelemetrySample.timestamp >= window.start,
            TelemetrySample.timestamp < window.end,
            StatusEntry.code.in_(CHART_CODES),
        )
        .group_by(bucket, StatusEntry.code)
    )
    result = await db.execute(stmt)

    grouped: dict = {}
    for row in result:
        grouped.setdefault(row.bucket, {})[row.code] = row.average
    return {key: _scale(averages) for key, averages in grouped.items()}


async def get_today_data(db: AsyncSession, tz: tzinfo, now: Optional[datetime] = None) -> list:
    """Hourly averages for the current local day, always 24 entries."""
    window = local_window(tz, 1, now)
    buckets = await _bucket_averages(db, window, "%H")

    skeleton = [{"hour": hour, **_zero_bucket()} for hour in range(24)]
    for key, values in buckets.items():
        skeleton[int(key)].update(values)
    return skeleton


async def get_daily_data(db: AsyncSession, tz: tzinfo, days: int, now: Optional[datetime] = None) -> list:
    """Daily averages for the last ``days`` local dates, oldest first."""
    window = local_window(tz, days, now)
    buckets = await _bucket_averages(db, window, "%Y-%m-%d")

    dates = [(window.today - timedelta(days=offset)).isoformat() for offset in range(days - 1, -1, -1)]
    return [{"date": day, **buckets.get(day, _zero_bucket())} for day in dates]


async def get_week_data(db: AsyncSession, tz: tzinfo, now: Optional[datetime] = None) -> list:
    return await get_daily_data(db, tz, 7, now)


async def get_month_data(db: AsyncSession, tz: tzinfo, now: Optional[datetime] = None) -> list:
    return await get_daily_data(db, tz, 30, now)


async def get_main_chart_data(session_factory, tz: tzinfo, now: Optional[datetime] = None) -> dict:
    """Run the today, week and month queries concurrently, one session each."""

    async def run(query):
        async with session_factory() as db:
            return await query(db, tz, now)

    today, week, month = await asyncio.gather(
        run(get_today_data),
        run(get_week_data),
        run(get_month_data),
    )
    return {"today": today, "week": week, "month": month}


async def get_today_consumption(
    db: AsyncSession,
    tz: tzinfo,
    rate: float,
    now: Optional[datetime] = None,
) -> dict:
    """Energy used today while switched on, in kWh, with its cost at ``rate``."""
    window = local_window(tz, 1, now)
    power = aliased(StatusEntry)
    switch = aliased(StatusEntry)
    previous = func.lag(TelemetrySample.timestamp, type_=DateTime).over(
        order_by=TelemetrySample.timestamp
    ).label("previous")

    stmt = (
        select(TelemetrySample.timestamp, power.value.label("power"), previous)
        .select_from(TelemetrySample)
        .join(power, and_(power.sample_id == TelemetrySample.id, power.code == "cur_power"))
        .join(switch, and_(switch.sample_id == TelemetrySample.id, switch.code == "switch_1"))
        .where(
            TelemetrySample.timestamp >= window.start,
            TelemetrySample.timestamp < window.end,
            switch.value == 1.0,
            power.value.is_not(None),
        )
        .order_by(TelemetrySample.timestamp)
    )
    result = await db.execute(stmt)

    total_kwh = 0.0
    data_points = 0
    for row in result:
        data_points += 1
        if row.previous is None:
            continue
        duration_hours = (row.timestamp - row.previous).total_seconds() * 1000 / MS_PER_HOUR
        power_kw = row.power / SCALED_CODES["cur_power"] / 1000
        total_kwh += power_kw * duration_hours

    return {
        "kwh": round(total_kwh, 4),
        "cost": round(total_kwh * rate, 2),
        "dataPoints": data_points,
    }


async def get_recent_samples(db: AsyncSession, limit: int = 60) -> list:
    """Latest samples, newest first, with the status flattened into fields."""
    stmt = select(TelemetrySample).order_by(TelemetrySample.timestamp.desc()).limit(limit)
    result = await db.execute(stmt)

    readings = []
    for sample in result.scalars():
        row = {"time": sample.timestamp.replace(tzinfo=timezone.utc).isoformat()}
        for item in sample.status or []:
            if isinstance(item, dict) and "code" in item:
                row[item["code"]] = item.get("value")
        readings.append(row)
    return readings
