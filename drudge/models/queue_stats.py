from dataclasses import dataclass, asdict


@dataclass
class QueueStats:
    name: str
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @staticmethod
    def from_row(row: tuple) -> "QueueStats":
        name, waiting, active, completed, failed, delayed = row
        return QueueStats(
            name=name,
            waiting=int(waiting or 0),
            active=int(active or 0),
            completed=int(completed or 0),
            failed=int(failed or 0),
            delayed=int(delayed or 0),
        )

    @property
    def total(self) -> int:
        return (
            self.waiting
            + self.active
            + self.completed
            + self.failed
            + self.delayed
        )

    def counts(self) -> dict[str, int]:
        counts = asdict(self)
        counts.pop("name")
        return counts
