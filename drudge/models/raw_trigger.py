from typing import Optional

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import mapped_column, Mapped

from .base_sql import BaseSQL


class RawTrigger(BaseSQL):
    """Persisted fire state of a trigger, so restarts don't refire ticks."""

    __tablename__ = "triggers"

    name: Mapped[str] = mapped_column(String, primary_key=True)
    cron: Mapped[str] = mapped_column(String, nullable=False)
    queue: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_tick_at: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True
    )
    last_fired_at: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True
    )
    last_error: Mapped[Optional[str]] = mapped_column(String, nullable=True)
