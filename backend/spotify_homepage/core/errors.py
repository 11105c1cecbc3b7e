from __future__ import annotations

from typing import Iterable, Tuple


class HomepageError(Exception):
    pass


class NotFound(HomepageError):
    def __init__(self, kind: str, ids: Iterable[str | int]) -> None:
        self.kind = kind
        self.ids: Tuple[str, ...] = tuple(str(i) for i in ids)
        super().__init__(f"{kind} not found: {', '.join(self.ids)}")


class DimensionMismatch(HomepageError):
    def __init__(self, expected: int, actual: int, *, subject: str | None = None) -> None:
        self.expected = expected
        self.actual = actual
        self.subject = subject
        where = f" for {subject}" if subject else ""
        super().__init__(f"feature vector dimension mismatch{where} (expected {expected}, got {actual})")


class EmptyCorpus(HomepageError):
    pass


class BatchEmpty(HomepageError):
    pass


class RequestTimeout(HomepageError):
    pass
