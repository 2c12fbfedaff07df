import logging
import threading
from datetime import datetime, timezone, timedelta
from typing import TYPE_CHECKING, Any

from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from drudge.core import common
from drudge.errors import TriggerGenerationError, ValidationError
from drudge.models.params import EnqueueParams
from drudge.models.raw_trigger import RawTrigger
from drudge.models.trigger import Trigger, TriggerState

if TYPE_CHECKING:
    from drudge.core.engine import Engine


logger = logging.getLogger(__name__)


CRON_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def _from_ms(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, timezone.utc)


def _weekday_number(token: str) -> int:
    token = token.lower()
    if token in CRON_WEEKDAYS:
        return CRON_WEEKDAYS.index(token)
    if token.isdigit() and int(token) <= 7:
        return int(token)
    raise ValueError(f"invalid weekday {token!r}")


def classic_weekdays(field: str) -> str:
    """Rewrite a crontab day-of-week field as a list of weekday names.

    Crontab counts weekdays from Sunday (0 or 7) while APScheduler 3 counts
    them from Monday. Names mean the same in both, so numbers, ranges and
    steps are expanded into names.

    Examples:

        >>> classic_weekdays("1-5")
        'mon,tue,wed,thu,fri'
        >>> classic_weekdays("0")
        'sun'
    """
    if field == "*":
        return field

    days: set[int] = set()
    for part in field.split(","):
        base, _, step = part.partition("/")
        if step and not step.isdigit():
            raise ValueError(f"invalid step {step!r}")
        increment = int(step) if step else 1
        if increment < 1:
            raise ValueError("step must be positive")

        if base == "*":
            first, last = 0, 6
        elif "-" in base:
            start, _, end = base.partition("-")
            first, last = _weekday_number(start), _weekday_number(end)
        else:
            first = _weekday_number(base)
            last = 6 if step else first
        if first > last:
            raise ValueError(f"range {base!r} runs backwards")

        days.update(day % 7 for day in range(first, last + 1, increment))

    return ",".join(CRON_WEEKDAYS[day] for day in sorted(days))


class Scheduler:
    """Fires cron triggers into queues, once per due tick.

    Every trigger persists the due time of the last tick it handled. On
    each evaluation the latest tick that is due since then is fired,
    missed ticks coalesce into one. Claiming the tick and inserting its
    jobs happen in one transaction, guarded by the previously observed
    tick, so a tick is fired exactly once even across restarts or with
    several schedulers sharing the database.

    Args:
        engine (Engine): Provides the broker and the job store.
        interval (int): Milliseconds between evaluations.
        timezone (str): Timezone the cron expressions are evaluated in.
    """

    MAX_CATCH_UP = 100_000

    def __init__(
        self, engine: "Engine", interval: int = 1000, timezone: str = "UTC"
    ) -> None:
        self.engine = engine
        self.interval = interval
        self.timezone = timezone
        self.triggers: dict[str, Trigger] = {}
        self._crons: dict[str, CronTrigger] = {}
        self.stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def parse_cron(self, expression: str) -> CronTrigger:
        """Parse a five-field crontab expression.

        The day-of-week field follows crontab numbering, 0 and 7 are Sunday.
        """
        try:
            fields = expression.split()
            if len(fields) != 5:
                raise ValueError(f"expected 5 fields, got {len(fields)}")
            fields[4] = classic_weekdays(fields[4])
            return CronTrigger.from_crontab(" ".join(fields), timezone=self.timezone)
        except (AttributeError, TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid cron expression {expression!r}: {exc}")

    def register(
        self, trigger: Trigger, now: datetime | int | None = None
    ) -> Trigger:
        """Register a trigger and make sure its fire state is persisted.

        A trigger seen for the first time only fires ticks due after
        ``now``. When the expression or target queue of a known trigger
        changed, its schedule restarts from ``now`` as well.

        Raises:
            ValidationError: Duplicate name, unknown queue or bad cron.
        """
        if not trigger.name or not isinstance(trigger.name, str):
            raise ValidationError("Trigger name must be a non-empty string")
        if trigger.name in self.triggers:
            raise ValidationError(f"Trigger {trigger.name!r} is already registered")
        self.engine.broker.config(trigger.queue)
        cron = self.parse_cron(trigger.cron)

        now_ms = common.to_ms(now)
        with Session(self.engine.store.engine) as session:
            raw = session.get(RawTrigger, trigger.name)
            if raw is None:
                session.add(
                    RawTrigger(
                        name=trigger.name,
                        cron=trigger.cron,
                        queue=trigger.queue,
                        created_at=now_ms,
                    )
                )
            elif raw.cron != trigger.cron or raw.queue != trigger.queue:
                logger.info(
                    f"Trigger {trigger.name} changed schedule, restarting it from now"
                )
                raw.cron = trigger.cron
                raw.queue = trigger.queue
                raw.created_at = now_ms
                raw.last_tick_at = None
            try:
                session.commit()
            except IntegrityError:
                # Registered concurrently by another process
                session.rollback()

        self.triggers[trigger.name] = trigger
        self._crons[trigger.name] = cron
        logger.info(
            f"Registered trigger {trigger.name} ({trigger.cron}) into {trigger.queue}"
        )
        return trigger

    def tick(self, now: datetime | int | None = None) -> dict[str, int]:
        """Evaluate every trigger once.

        Returns:
            dict[str, int]: Number of jobs enqueued per trigger.
        """
        now_ms = common.to_ms(now)
        fired: dict[str, int] = {}
        for name, trigger in list(self.triggers.items()):
            try:
                fired[name] = self._evaluate(trigger, now_ms)
            except SQLAlchemyError:
                logger.exception(f"Failed to evaluate trigger {name}")
                fired[name] = 0
        return fired

    def states(self) -> dict[str, TriggerState]:
        """Fire state of every registered trigger, for health reporting."""
        with Session(self.engine.store.engine) as session:
            raws = {
                raw.name: raw
                for raw in session.scalars(
                    select(RawTrigger).where(RawTrigger.name.in_(list(self.triggers)))
                )
            }

        states: dict[str, TriggerState] = {}
        for name, trigger in self.triggers.items():
            raw = raws.get(name)
            next_due_at = None
            if raw is not None:
                anchor_ms = raw.last_tick_at if raw.last_tick_at is not None else raw.created_at
                next_due_at = self._next_after(self._crons[name], anchor_ms)
            states[name] = TriggerState(
                name=name,
                cron=trigger.cron,
                queue=trigger.queue,
                running=self.running,
                last_tick_at=_from_ms(raw.last_tick_at) if raw else None,
                last_fired_at=_from_ms(raw.last_fired_at) if raw else None,
                next_due_at=next_due_at,
                last_error=raw.last_error if raw else None,
            )
        return states

    def run(self) -> None:
        logger.info(f"Starting scheduler with {len(self.triggers)} triggers")
        while True:
            self.tick()
            if self.stop_event.wait(self.interval / 1000):
                break
        logger.info("Scheduler stopped")

    def start(self) -> None:
        if self.running:
            return
        self.stop_event.clear()
        self._thread = threading.Thread(
            target=self.run, name="drudge-scheduler", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self.stop_event.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def _evaluate(self, trigger: Trigger, now_ms: int) -> int:
        with Session(self.engine.store.engine) as session:
            raw = session.get(RawTrigger, trigger.name)
            if raw is None:
                logger.warning(f"Trigger {trigger.name} has no stored state, skipping")
                return 0
            observed_tick = raw.last_tick_at
            anchor_ms = observed_tick if observed_tick is not None else raw.created_at

        tick = self._latest_due(self._crons[trigger.name], anchor_ms, now_ms)
        if tick is None:
            return 0
        tick_ms = common.to_ms(tick)

        try:
            params = self._generate(trigger, tick, now_ms)
        except TriggerGenerationError as exc:
            logger.error(f"{exc}, skipping tick {tick}", exc_info=exc.original)
            self._fire(trigger, observed_tick, tick_ms, now_ms, [], error=str(exc))
            return 0

        return self._fire(trigger, observed_tick, tick_ms, now_ms, params)

    def _generate(
        self, trigger: Trigger, tick: datetime, now_ms: int
    ) -> list[EnqueueParams]:
        try:
            payloads = trigger.generate(tick)
            return [
                self.engine.broker.prepare(
                    trigger.queue, payload, now=now_ms, **trigger.job_options
                )
                for payload in payloads
            ]
        except Exception as exc:
            raise TriggerGenerationError(trigger.name, exc)

    def _fire(
        self,
        trigger: Trigger,
        observed_tick: int | None,
        tick_ms: int,
        now_ms: int,
        params: list[EnqueueParams],
        error: str | None = None,
    ) -> int:
        values: dict[str, Any] = {"last_tick_at": tick_ms, "last_error": error}
        if error is None:
            values["last_fired_at"] = now_ms

        if observed_tick is None:
            guard = RawTrigger.last_tick_at.is_(None)
        else:
            guard = RawTrigger.last_tick_at == observed_tick

        with Session(self.engine.store.engine) as session:
            stmt = (
                update(RawTrigger)
                .where(RawTrigger.name == trigger.name, guard)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if session.execute(stmt).rowcount != 1:
                logger.debug(f"Tick {tick_ms} of {trigger.name} was already handled")
                return 0

            jobs = self.engine.store.create_many(session, params)
            session.commit()

        if error is None:
            logger.info(
                f"Trigger {trigger.name} fired, enqueued {len(jobs)} jobs into {trigger.queue}"
            )
        return len(jobs)

    def _latest_due(
        self, cron: CronTrigger, anchor_ms: int, now_ms: int
    ) -> datetime | None:
        latest = self._next_after(cron, anchor_ms)
        if latest is None or common.to_ms(latest) > now_ms:
            return None
        for _ in range(self.MAX_CATCH_UP):
            following = self._next_after(cron, common.to_ms(latest))
            if following is None or common.to_ms(following) > now_ms:
                break
            latest = following
        return latest

    @staticmethod
    def _next_after(cron: CronTrigger, anchor_ms: int) -> datetime | None:
        anchor = _from_ms(anchor_ms) + timedelta(microseconds=1)
        return cron.get_next_fire_time(None, anchor)
