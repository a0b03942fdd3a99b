#!/usr/bin/env python3
"""
Typed I/O outcomes for the Hawa UDP Proxy
Every socket operation in the relay reports an IOOutcome instead of raising,
so the pumps decide continuation policy from the status alone
"""

from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Dict, Optional, Tuple


class IOStatus(Enum):
    """Result classes for relay I/O"""
    OK = auto()
    TRANSIENT = auto()  # Per-datagram failure, pump keeps going
    FATAL = auto()      # Setup failure, relay must not start


@dataclass(frozen=True)
class IOOutcome:
    """Result of a single relay I/O operation"""
    operation: str
    status: IOStatus
    nbytes: int = 0
    peer: Optional[Tuple[Any, ...]] = None
    error: Optional[BaseException] = None

    @classmethod
    def success(cls, operation: str, nbytes: int = 0,
                peer: Optional[Tuple[Any, ...]] = None) -> 'IOOutcome':
        return cls(operation, IOStatus.OK, nbytes, peer)

    @classmethod
    def transient(cls, operation: str, error: BaseException,
                  peer: Optional[Tuple[Any, ...]] = None) -> 'IOOutcome':
        return cls(operation, IOStatus.TRANSIENT, 0, peer, error)

    @classmethod
    def fatal(cls, operation: str, error: BaseException) -> 'IOOutcome':
        return cls(operation, IOStatus.FATAL, 0, None, error)

    @property
    def ok(self) -> bool:
        return self.status is IOStatus.OK

    @property
    def is_fatal(self) -> bool:
        return self.status is IOStatus.FATAL

    def describe(self) -> str:
        """One-line description used in log messages"""
        if self.ok:
            return f"{self.operation}: {self.nbytes} bytes"
        target = f" ({self.peer[0]}:{self.peer[1]})" if self.peer else ""
        return f"{self.operation}{target} failed: {self.error}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging"""
        return {
            'operation': self.operation,
            'status': self.status.name,
            'nbytes': self.nbytes,
            'peer': self.peer,
            'error': str(self.error) if self.error else None
        }


class RelaySetupError(Exception):
    """Relay could not resolve the backend or bind the public port"""

    def __init__(self, outcome: IOOutcome):
        super().__init__(outcome.describe())
        self.outcome = outcome
