"""Financial-state errors raised by the capital call services.

Notification infrastructure failures never appear here: the queue client
turns them into sentinels and logs them.
"""


class CapitalCallError(Exception):
    pass


class InvalidAllocationInput(CapitalCallError, ValueError):
    """Non-positive amount, out-of-range fraction or no participants."""


class AggregationUnavailable(CapitalCallError):
    """The item set could not be read; the call keeps its previous status."""


class InvalidStatusTransition(CapitalCallError):
    def __init__(self, kind: str, current: str, target: str):
        super().__init__(f"Cannot move {kind} from '{current}' to '{target}'")
        self.kind = kind
        self.current = current
        self.target = target


class InvalidWireAmount(CapitalCallError, ValueError):
    pass


class NotFound(CapitalCallError, LookupError):
    pass
