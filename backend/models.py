from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in SQLite."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def numeric_value(value):
    """Value stored for averaging: bools as 1.0/0.0, non-numbers as None."""
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    return None


class TelemetrySample(Base):
    __tablename__ = "telemetry_samples"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=utcnow, index=True, nullable=False)

    # Raw ordered status list as returned by Tuya
    status = Column(JSON, nullable=False)

    entries = relationship(
        "StatusEntry",
        back_populates="sample",
        cascade="all, delete-orphan",
        order_by="StatusEntry.position",
    )

    @classmethod
    def from_status(cls, timestamp: datetime, status: list) -> "TelemetrySample":
        """Build a sample together with its unwound status entries."""
        sample = cls(timestamp=timestamp, status=status)
        for position, item in enumerate(status):
            if not isinstance(item, dict) or "code" not in item:
                continue
            sample.entries.append(
                StatusEntry(
                    position=position,
                    code=str(item["code"]),
                    value=numeric_value(item.get("value")),
                )
            )
        return sample


class StatusEntry(Base):
    """One (code, value) fact of a sample, used for grouping in SQL."""

    __tablename__ = "status_entries"

    id = Column(Integer, primary_key=True)
    sample_id = Column(Integer, ForeignKey("telemetry_samples.id"), index=True, nullable=False)
    position = Column(Integer, nullable=False)
    code = Column(String, index=True, nullable=False)
    value = Column(Float, nullable=True)  # switch_1 stored as 1.0 / 0.0

    sample = relationship("TelemetrySample", back_populates="entries")
