"""
Per-item outcome records for fail-open loops.

Loops over contacts, files or accounts never stop on a single bad item;
they collect an ItemFailure per failed item and hand the list back to the
caller, which logs and reports it.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class ItemFailure:
    """
    A failed item of a batch.

    Attributes:
        item: Identifier of the item (contact id, file path, username, ...)
        error: The exception raised while processing it
    """

    item: str
    error: BaseException

    def __str__(self) -> str:
        return f"{self.item}: {type(self.error).__name__}: {self.error}"


@dataclass
class BatchResult:
    """
    Outcome of a fail-open batch.

    Attributes:
        succeeded: Items processed without error
        failures: Items that raised
    """

    succeeded: list[Any] = field(default_factory=list)
    failures: list[ItemFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def merge(self, other: "BatchResult") -> None:
        self.succeeded.extend(other.succeeded)
        self.failures.extend(other.failures)
